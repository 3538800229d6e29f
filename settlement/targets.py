from datetime import datetime
from typing import Callable, Optional

import structlog

from .config import Settings, get_settings
from .exceptions import PrizeError
from .leaderboard import EarningsAggregator
from .models import MonthlyAchiever, MonthlyTarget, PrizeRecord
from .notifications import LoggingNotifier, Notifier, notify_safely
from .storage import InMemoryStorage, WriteBatch, WriteConflictError
from .windows import store_clock


class MonthlyTargetService:
    """Monthly affiliate goal: who reached it this month and who got the prize."""

    def __init__(
        self,
        storage: InMemoryStorage,
        aggregator: Optional[EarningsAggregator] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.clock = clock or store_clock(self.settings.timezone)
        self.aggregator = aggregator or EarningsAggregator(storage, self.settings, self.clock)
        self.notifier = notifier or LoggingNotifier()
        self._logger = structlog.get_logger(__name__)

    def get_target(self) -> MonthlyTarget:
        data = self.storage.get("monthlyTarget")
        if data:
            return MonthlyTarget(**data)
        return MonthlyTarget(
            goal_amount=self.settings.monthly_target_goal,
            prize=self.settings.monthly_target_prize,
        )

    def set_target(self, target: MonthlyTarget) -> MonthlyTarget:
        self.storage.set("monthlyTarget", target.model_dump())
        self._logger.info("monthly_target_updated", goal=str(target.goal_amount), prize=target.prize)
        return target

    def _prize_key(self, now: datetime) -> str:
        return f"{now.year}_{now.month:02d}"

    def achievers(self, now: Optional[datetime] = None) -> list[MonthlyAchiever]:
        now = now or self.clock()
        target = self.get_target()
        users = self.aggregator.ranked_users()

        given = {}
        for record in self.storage.children("prizeRecords").values():
            if record.get("month") == now.month and record.get("year") == now.year:
                given[record["user_id"]] = record.get("given_at")

        result = []
        for user_id, earnings in self.aggregator.monthly_totals(now).items():
            user = users.get(user_id)
            if user is None or earnings < target.goal_amount:
                continue
            result.append(
                MonthlyAchiever(
                    user_id=user_id,
                    name=user.name,
                    email=user.email,
                    monthly_earnings=earnings,
                    prize_given=user_id in given,
                    prize_given_at=given.get(user_id),
                )
            )
        result.sort(key=lambda a: (-a.monthly_earnings, a.user_id))
        return result

    def award_prize(self, user_id: str, now: Optional[datetime] = None) -> PrizeRecord:
        now = now or self.clock()
        target = self.get_target()
        achiever = next((a for a in self.achievers(now) if a.user_id == user_id), None)
        if achiever is None:
            raise PrizeError(f"User {user_id} has not reached this month's target")
        if achiever.prize_given:
            raise PrizeError(f"Prize already given to {user_id} this month")

        record = PrizeRecord(
            user_id=user_id,
            user_name=achiever.name,
            user_email=achiever.email,
            prize=target.prize,
            goal_amount=target.goal_amount,
            monthly_earnings=achiever.monthly_earnings,
            given_at=now,
            month=now.month,
            year=now.year,
        )

        prize_path = f"users/{user_id}/monthlyPrizes/{self._prize_key(now)}"
        batch = WriteBatch()
        batch.expect(prize_path, None)
        batch.push(self.storage, "prizeRecords", record.model_dump())
        batch.update(
            prize_path,
            {
                "prize": target.prize,
                "collected_at": now,
                "goal_amount": target.goal_amount,
                "earnings": achiever.monthly_earnings,
            },
        )
        try:
            self.storage.commit(batch)
        except WriteConflictError as exc:
            raise PrizeError(f"Prize already given to {user_id} this month") from exc

        self._logger.info("monthly_prize_awarded", user_id=user_id, prize=target.prize)
        notify_safely(
            self.notifier,
            user_id,
            "Congratulations! You have won this month's prize!",
            f"<h1>Congratulations {achiever.name}!</h1>"
            f"<p>You have achieved the monthly target of Rs {target.goal_amount}.</p>"
            f"<p>Your prize: <strong>{target.prize}</strong></p>"
            f"<p>Your earnings this month: <strong>Rs {achiever.monthly_earnings}</strong></p>",
        )
        return record
