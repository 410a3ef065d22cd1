import pytest

from multitalk.services.job_store import JobStore
from multitalk.services.ledger import CreditLedger
from multitalk.storage.repository import AccountRepository, JobRepository


@pytest.fixture
def ledger() -> CreditLedger:
    return CreditLedger(AccountRepository())


@pytest.fixture
def job_store() -> JobStore:
    return JobStore(JobRepository())
