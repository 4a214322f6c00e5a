import hashlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from wagerbot.context import WorkerContext
from wagerbot.exceptions import AddressResolutionError
from wagerbot.models import BetTerms, DepositAddress
from wagerbot.storage import Storage
from wagerbot.transactions import SourcePolicy

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

ESCROW_OWNER = "settler.testnet"
ESCROW_PATH = "base_escrow"


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance_to(self, hours: float) -> None:
        self.now = T0 + timedelta(hours=hours)


class FakeSettlement:
    """Deterministic address derivation and scripted balances."""

    def __init__(self):
        self.balances: dict[str, object] = {}
        self.failing_paths: set[str] = set()
        self.exploding_paths: set[str] = set()
        self.derive_calls = 0

    @staticmethod
    def address_for(owner: str, path: str) -> str:
        return "0x" + hashlib.sha1(f"{owner}:{path}".encode()).hexdigest()

    def derive_address(self, owner: str, path: str) -> DepositAddress:
        self.derive_calls += 1
        if path in self.exploding_paths:
            raise RuntimeError(f"unexpected failure for {path}")
        if path in self.failing_paths:
            raise AddressResolutionError(f"gateway unavailable for {path}")
        return DepositAddress(address=self.address_for(owner, path), public_key=f"pk:{path}")

    def set_balance(self, owner: str, path: str, amount) -> None:
        self.balances[self.address_for(owner, path)] = amount

    def get_balance(self, address: str):
        value = self.balances.get(address, 0)
        if isinstance(value, Exception):
            return None
        return value


class FakeTransactions:
    """Records executed transfers; scripted failures are raised in order."""

    def __init__(self):
        self.executed = []
        self.failures: list = []

    def execute(self, request) -> str:
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        self.executed.append(request)
        return f"0xtx{len(self.executed)}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path):
    return Storage(tmp_path / "ledger.db")


@pytest.fixture
def settlement():
    return FakeSettlement()


@pytest.fixture
def transactions():
    return FakeTransactions()


@pytest.fixture
def oracle():
    mock = MagicMock()
    mock.determine_outcome.return_value = None
    return mock


@pytest.fixture
def notify():
    return MagicMock(return_value=True)


@pytest.fixture
def context(ledger, settlement, oracle, transactions, notify, clock):
    return WorkerContext(
        ledger=ledger,
        settlement=settlement,
        oracle=oracle,
        transactions=transactions,
        source_policy=SourcePolicy(escrow_owner=ESCROW_OWNER, escrow_path=ESCROW_PATH),
        notify=notify,
        clock=clock,
        max_concurrency=1,
    )


@pytest.fixture
def make_bet(ledger):
    """Create a bet at T0 and return its ID."""
    counter = {"n": 0}

    def _make(amount: int = 100, deadline_hours: float = 24, challenger: str = "alice",
              challenged: str = "bob", criteria: str = "Team A wins the final") -> int:
        counter["n"] += 1
        n = counter["n"]
        terms = BetTerms(
            challenger=challenger,
            challenged=challenged,
            amount=amount,
            resolution_criteria=criteria,
            deadline_hours=deadline_hours,
        )
        return ledger.create_bet(terms, f"base_p1_{n}", f"base_p2_{n}", created_at=T0)

    return _make
