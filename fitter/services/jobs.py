from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from fitter.core.batch import BatchReport
from fitter.core.config import PipelineConfig
from fitter.core.dates import DayLike, utc_now
from fitter.db.store import ActivityStore
from fitter.services.aggregator import run_daily_aggregation
from fitter.services.ai_gateway import AIGateway
from fitter.services.lifecycle import SuggestionLifecycleManager
from fitter.services.suggestions import SuggestionGenerator

JOB_NAMES = ("aggregate", "suggestions", "expire")


class PipelineJobs:
    def __init__(
        self,
        config: PipelineConfig,
        session_factory: Callable[[], Session],
        gateway: Optional[AIGateway] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.session_factory = session_factory
        self._gateway = gateway
        self.clock = clock

    @property
    def gateway(self) -> AIGateway:
        # Built lazily so aggregation-only runs need no provider credentials.
        if self._gateway is None:
            self._gateway = AIGateway(self.config)
        return self._gateway

    def aggregate(self, day: Optional[DayLike] = None) -> BatchReport:
        return run_daily_aggregation(self.session_factory, self.config, day=day, clock=self.clock)

    def expire(self) -> int:
        with self.session_factory() as db:
            return SuggestionLifecycleManager(ActivityStore(db), clock=self.clock).expire_stale()

    def suggestions(self) -> BatchReport:
        generator = SuggestionGenerator(self.config, self.gateway, clock=self.clock)
        return generator.run_for_all_users(self.session_factory)

    def registry(self) -> dict[str, Callable[..., Any]]:
        return {"aggregate": self.aggregate, "suggestions": self.suggestions, "expire": self.expire}
