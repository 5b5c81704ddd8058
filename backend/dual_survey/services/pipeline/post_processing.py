"""
Post-Merge Queue

In-process FIFO handoff from the merger to release and payment decisioning.
Each newly merged report id is enqueued after its merge commits; draining
runs the release gate and, for released reports, the payment engine.
Failures are kept on the queue so they stay observable.
"""
import logging
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Deque, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..notifications import Notifier

logger = logging.getLogger(__name__)


@dataclass
class PostMergeOutcome:
    report_id: str
    released: bool = False
    release_status: Optional[str] = None
    release_reason: Optional[str] = None
    payment_decision: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PostMergeQueue:
    """FIFO of merged report ids awaiting release evaluation."""

    def __init__(
        self,
        db_session: Session,
        notifier: Optional[Notifier] = None,
        admin_emails: Optional[Sequence[str]] = None,
    ):
        self.db = db_session
        self.notifier = notifier
        self.admin_emails = admin_emails
        self._pending: Deque[str] = deque()
        self.failures: List[PostMergeOutcome] = []

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, report_id: str) -> None:
        self._pending.append(report_id)

    def drain(self) -> List[PostMergeOutcome]:
        """Process every queued report in arrival order."""
        outcomes = []
        while self._pending:
            outcomes.append(self._process(self._pending.popleft()))
        return outcomes

    def _process(self, report_id: str) -> PostMergeOutcome:
        from ..decisioning.release_gate import ReleaseGate
        from ..decisioning.payment_engine import PaymentDecisionEngine

        outcome = PostMergeOutcome(report_id=report_id)
        try:
            release = ReleaseGate(self.db, notifier=self.notifier).evaluate(report_id)
            outcome.released = release.released
            outcome.release_status = release.release_status
            outcome.release_reason = release.reason

            if release.released:
                decision = PaymentDecisionEngine(
                    self.db, notifier=self.notifier, admin_emails=self.admin_emails,
                ).analyze_payment_decision(report_id)
                outcome.payment_decision = decision.decision.value
            else:
                logger.info(f"Report {report_id} requires manual review: {release.reason}")
        except Exception as e:
            self.db.rollback()
            outcome.error = str(e)
            self.failures.append(outcome)
            logger.error(f"Post-processing failed for report {report_id}: {e}")

        return outcome
