"""
Test suite for structured log lines
"""

import io
import json
import logging
from datetime import date

from microfinance.logging_config import JSONFormatter, loan_context, log_action, metric_context
from microfinance.metrics import MetricName, new_event

from support import build_system, individual_payload, seed_client


class TestStructuredLogging:
    """Test loan and metric context on JSON log lines"""

    def setup_method(self):
        self.stream = io.StringIO()
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(JSONFormatter())
        self.logger = logging.getLogger("microfinance.tests.logging")
        self.logger.handlers = [handler]
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_loan_context_fields(self):
        system = build_system()
        loan = system.loan_manager.create_loan(individual_payload(seed_client(system).id))

        log_action(self.logger, "info", "Loan touched", user_id="officer@mfi.test",
                   action="touch", resource=loan.id, context=loan_context(loan), extra={"n": 1})
        line = self.lines()[0]

        assert line["loan_id"] == loan.id
        assert line["loan_category"] == "individual"
        assert line["branch_code"] == loan.branch_code
        assert line["currency"] == "LRD"
        assert line["extra"] == {"n": 1}
        assert "metric" not in line

    def test_metric_context_through_stdlib_extra(self):
        event = new_event(MetricName.OVERDUE, "250", date(2024, 1, 8), currency="LRD")
        self.logger.info("Metric touched", extra=metric_context(event))
        line = self.lines()[0]

        assert line["metric"] == "overdue"
        assert line["currency"] == "LRD"
        assert "loan_id" not in line

    def test_unknown_context_keys_ignored(self):
        log_action(self.logger, "info", "Plain", context={"colour": "blue", "loan_id": None})
        line = self.lines()[0]
        assert "colour" not in line
        assert "loan_id" not in line

    def test_disabled_level_writes_nothing(self):
        log_action(self.logger, "debug", "Quiet")
        assert self.stream.getvalue() == ""
