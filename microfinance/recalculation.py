"""
Recalculation Engine

Rebuilds every loan-derived metric from loan and distribution state alone.
Manually entered metrics (expenses and anything posted through the metrics
endpoint under a non-derived name) are left untouched. Safe to re-run.
"""

from typing import Any, Dict, List, Optional

from .config import get_config
from .distributions import DistributionLedger
from .loans import LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .metrics import (
    LOAN_DERIVED_METRICS, MetricEvent, MetricsStore, activation_events, collateral_deposit_event,
    collection_events, creation_events, distribution_events
)


logger = get_logger("microfinance.recalculation")

ACTIVATED_STATUSES = (LoanStatus.ACTIVE, LoanStatus.PAID, LoanStatus.DEFAULTED)


class RecalculationEngine:
    """Replays loans and distributions into a fresh set of derived events"""

    def __init__(
        self,
        loan_manager: LoanManager,
        distributions: DistributionLedger,
        metrics: MetricsStore,
        batch_size: Optional[int] = None
    ):
        self.loan_manager = loan_manager
        self.distributions = distributions
        self.metrics = metrics
        self.batch_size = batch_size or get_config().metrics_batch_size

    def recalculate_all_metrics(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Delete all loan-derived events and replay them

        Returns:
            Counts of purged events, replayed loans, distributions and written events
        """
        purged = self.metrics.clear_metrics(LOAN_DERIVED_METRICS)

        loans = self.loan_manager.list_loans()
        loans.sort(key=lambda loan: loan.created_at)
        loans_by_id = {loan.id: loan for loan in loans}

        pending: List[MetricEvent] = []
        written = 0

        def flush(force: bool = False) -> int:
            if not pending or (len(pending) < self.batch_size and not force):
                return 0
            count = self.metrics.record_many(pending)
            pending.clear()
            return count

        for loan in loans:
            pending.extend(creation_events(loan, {"recalculated": True}))
            if loan.status in ACTIVATED_STATUSES:
                pending.extend(activation_events(loan, {"recalculated": True}))
                deposit = collateral_deposit_event(loan, {"recalculated": True})
                if deposit is not None:
                    pending.append(deposit)
            for index, entry in enumerate(loan.collections):
                pending.extend(collection_events(loan, entry, {"collection_index": index, "recalculated": True}))
            written += flush()

        replayed_distributions = 0
        skipped_distributions = 0
        for distribution in self.distributions.list_all():
            loan = loans_by_id.get(distribution.loan_id)
            if loan is None:
                skipped_distributions += 1
                continue
            pending.extend(distribution_events(
                loan, distribution.amount, distribution.date, distribution.id,
                distribution.member_id, {"recalculated": True}
            ))
            replayed_distributions += 1
            written += flush()

        written += flush(force=True)

        stats = {
            "purged_events": purged,
            "loans": len(loans),
            "distributions": replayed_distributions,
            "orphan_distributions": skipped_distributions,
            "events_written": written,
        }
        log_action(logger, "info", "Metrics recalculated", user_id=user_id,
                   action="recalculate_metrics", extra=stats)
        return stats
