"""
Tests for the batch job entry point
"""

import json
import logging
import pytest

from loan_servicing.config import LoanServicingConfig
from loan_servicing.jobs import build_parser, main
from loan_servicing.servicing import LoanServicing

from conftest import make_terms


@pytest.fixture(autouse=True)
def restore_logging():
    logger = logging.getLogger("loan_servicing")
    saved = (logger.handlers[:], logger.level, logger.propagate)
    yield
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        if handler not in saved[0]:
            handler.close()
    for handler in saved[0]:
        logger.addHandler(handler)
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.fixture
def database_url(tmp_path):
    """SQLite database holding one scheduled loan"""
    url = f"sqlite:///{tmp_path / 'jobs.db'}"
    servicing = LoanServicing.from_config(LoanServicingConfig(database_url=url))
    loan = servicing.register_loan(make_terms(), client_id="c1")
    servicing.generate_schedule(loan.id)
    servicing.storage.close()
    return url


class TestJobs:
    """Test the job CLI"""

    def test_sweep(self, database_url, capsys):
        code = main(["--database-url", database_url, "sweep", "--today", "2026-03-15"])
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output['job'] == "sweep"
        assert output['today'] == "2026-03-15"
        assert output['loans_processed'] == 1
        assert output['transitions'] == 2
        assert output['overdue_count'] == 2

    def test_recalculate_all(self, database_url, capsys):
        code = main(["--database-url", database_url, "recalculate-all"])
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output['job'] == "recalculate-all"
        assert output['checked'] == 1
        assert output['failed'] == 0

    def test_recalculate_inconsistent(self, database_url, capsys):
        code = main(["--database-url", database_url, "recalculate-inconsistent"])
        output = json.loads(capsys.readouterr().out)

        assert code == 0
        assert output['repaired'] == []

    def test_invalid_date(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sweep", "--today", "15/03/2026"])

    def test_job_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_sweep_failure_sets_exit_code(self, tmp_path, capsys):
        url = f"sqlite:///{tmp_path / 'broken.db'}"
        servicing = LoanServicing.from_config(LoanServicingConfig(database_url=url))
        loan = servicing.register_loan(make_terms(), client_id="c1")
        servicing.generate_schedule(loan.id)
        servicing.storage.delete("loans", loan.id)
        servicing.storage.close()

        code = main(["--database-url", url, "sweep", "--today", "2026-03-15"])
        output = json.loads(capsys.readouterr().out)

        assert code == 1
        assert output['failed'] == 1
        assert loan.id in output['errors']
