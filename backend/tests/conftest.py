"""
Pytest fixtures and configuration for Editorial Clock tests.

Provides:
- Manual clock, fresh in-memory store and a wired service container
- Test client with the container overridden
- Mock Supabase client (query builder, unique constraints and the
  commit_transition function) for the Supabase store
- Factory fixtures for stages, manuscripts and invitations
"""
import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from editorial_clock.core.clock import ManualClock
from editorial_clock.core.config import settings
from editorial_clock.core.store import InMemorySchedulingStore
from editorial_clock.main import app
from editorial_clock.services.container import build_services, get_services, set_services
from editorial_clock.services.notifications import LogNotificationSender


# Monday 6 January 2025, 09:00 UTC
T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


# ==========================================
# MOCK SUPABASE
# ==========================================

class MockAPIError(Exception):
    """Stands in for postgrest.APIError (only its text is inspected)."""


class MockUniqueViolation(MockAPIError):
    """Raised where Postgres would report unique_violation (23505)."""


class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count if count is not None else len(self.data)


# Unique columns per table, mirroring supabase/schema.sql
UNIQUE_COLUMNS = {
    "stage_definitions": ["stage_key"],
    "stage_occupancies": ["id"],
    "review_invitations": ["id"],
    "fire_events": ["key"],
    "timeline_events": ["id"],
    "notification_outbox": ["id", "idempotency_key"],
}


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


class MockSupabaseTable:
    """Mock Supabase query builder for one table."""

    def __init__(self, table_name: str, db: "MockSupabaseClient"):
        self.table_name = table_name
        self.db = db
        self._filters = []
        self._order_by = None
        self._order_desc = False
        self._limit = None
        self._operation = "select"
        self._payload = None
        self._on_conflict = None
        self._ignore_duplicates = False

    # ---------- operations ----------

    def select(self, fields: str = "*", count: str = None):
        self._operation = "select"
        return self

    def insert(self, data: Any):
        self._operation = "insert"
        self._payload = data if isinstance(data, list) else [data]
        return self

    def upsert(self, data: Any, on_conflict: str = None, ignore_duplicates: bool = False):
        self._operation = "upsert"
        self._payload = data if isinstance(data, list) else [data]
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, data: dict):
        self._operation = "update"
        self._payload = data
        return self

    def delete(self):
        self._operation = "delete"
        return self

    # ---------- filters ----------

    def eq(self, column: str, value: Any):
        self._filters.append(("eq", column, value))
        return self

    def in_(self, column: str, values: list):
        self._filters.append(("in", column, values))
        return self

    def is_(self, column: str, value: Any):
        """IS filter (for null checks)."""
        self._filters.append(("is", column, value))
        return self

    def lte(self, column: str, value: Any):
        self._filters.append(("lte", column, value))
        return self

    def order(self, column: str, desc: bool = False):
        self._order_by = column
        self._order_desc = desc
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    # ---------- execution ----------

    @property
    def rows(self) -> list:
        return self.db.mock_data.setdefault(self.table_name, [])

    def _matches(self, row: dict) -> bool:
        for op, column, value in self._filters:
            if op == "eq" and row.get(column) != value:
                return False
            if op == "in" and row.get(column) not in value:
                return False
            if op == "is" and value == "null" and row.get(column) is not None:
                return False
            if op == "lte" and not (_comparable(row.get(column)) <= _comparable(value)):
                return False
        return True

    def _violates_unique(self, row: dict, others: list) -> Optional[str]:
        for column in UNIQUE_COLUMNS.get(self.table_name, []):
            if any(o.get(column) == row.get(column) for o in others):
                return column
        if self.table_name == "stage_occupancies" and row.get("exited_at") is None:
            if any(
                o.get("manuscript_id") == row.get("manuscript_id") and o.get("exited_at") is None
                for o in others
            ):
                return "one_open_occupancy_per_manuscript"
        return None

    def _insert_rows(self, rows: list) -> list:
        staged = list(self.rows)
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            column = self._violates_unique(row, staged)
            if column:
                raise MockUniqueViolation(
                    f"duplicate key value violates unique constraint ({self.table_name}.{column})"
                )
            if self.table_name == "timeline_events":
                row["seq"] = self.db.next_seq()
            staged.append(row)
            inserted.append(row)
        self.rows.extend(inserted)
        return [copy.deepcopy(r) for r in inserted]

    def execute(self) -> MockSupabaseResponse:
        with self.db.lock:
            return self._execute()

    def _execute(self) -> MockSupabaseResponse:
        self.db.calls.append((self.table_name, self._operation))
        if (self.table_name, self._operation) in self.db.fail_on:
            raise MockAPIError(f"connection reset during {self._operation} on {self.table_name}")

        if self._operation == "insert":
            return MockSupabaseResponse(self._insert_rows(self._payload))

        if self._operation == "upsert":
            key = self._on_conflict or UNIQUE_COLUMNS[self.table_name][0]
            written = []
            for row in self._payload:
                existing = next((r for r in self.rows if r.get(key) == row.get(key)), None)
                if existing is None:
                    written.extend(self._insert_rows([row]))
                elif not self._ignore_duplicates:
                    existing.update(copy.deepcopy(row))
                    written.append(copy.deepcopy(existing))
            return MockSupabaseResponse(written)

        matched = [r for r in self.rows if self._matches(r)]

        if self._operation == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
            return MockSupabaseResponse([copy.deepcopy(r) for r in matched])

        if self._operation == "delete":
            self.db.mock_data[self.table_name] = [r for r in self.rows if r not in matched]
            return MockSupabaseResponse([copy.deepcopy(r) for r in matched])

        results = [copy.deepcopy(r) for r in matched]
        if self._order_by:
            present = [r for r in results if r.get(self._order_by) is not None]
            missing = [r for r in results if r.get(self._order_by) is None]
            present.sort(key=lambda r: _comparable(r[self._order_by]), reverse=self._order_desc)
            results = present + missing
        if self._limit is not None:
            results = results[:self._limit]
        return MockSupabaseResponse(results)


class MockRpcCall:
    """Pending rpc() call; execute() runs it all-or-nothing like a Postgres function."""

    def __init__(self, db: "MockSupabaseClient", name: str, params: dict):
        self.db = db
        self.name = name
        self.params = params or {}

    def execute(self) -> MockSupabaseResponse:
        with self.db.lock:
            self.db.calls.append(("rpc", self.name))
            if ("rpc", self.name) in self.db.fail_on:
                raise MockAPIError(f"connection reset during rpc {self.name}")

            function = getattr(self.db, f"_rpc_{self.name}")
            snapshot = copy.deepcopy(self.db.mock_data), self.db._seq
            try:
                function(**self.params)
            except Exception:
                self.db.mock_data.clear()
                self.db.mock_data.update(snapshot[0])
                self.db._seq = snapshot[1]
                raise
            return MockSupabaseResponse([])


class MockSupabaseClient:
    """
    Mock of supabase.Client: table() query builders over in-memory rows.

    rpc("commit_transition") mirrors the SQL function in supabase/schema.sql
    and restores every table if any step raises.
    fail_on holds (table, operation) pairs that raise, to exercise rollback.
    """

    def __init__(self):
        self.mock_data: Dict[str, List[dict]] = {table: [] for table in UNIQUE_COLUMNS}
        self.fail_on: set = set()
        self.calls: List[tuple] = []
        self.lock = threading.RLock()
        self._seq = 0

    def table(self, table_name: str) -> MockSupabaseTable:
        return MockSupabaseTable(table_name, self)

    def rpc(self, name: str, params: Optional[dict] = None) -> MockRpcCall:
        return MockRpcCall(self, name, params)

    def next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _rpc_commit_transition(
        self,
        p_fire_event: Optional[dict] = None,
        p_require_open_occupancy_id: Optional[str] = None,
        p_close_occupancy: Optional[dict] = None,
        p_open_occupancy: Optional[dict] = None,
        p_invitation: Optional[dict] = None,
        p_expected_version: Optional[int] = None,
        p_timeline: Optional[list] = None,
        p_notifications: Optional[list] = None,
    ) -> None:
        if p_fire_event is not None:
            try:
                self.table("fire_events").insert(p_fire_event).execute()
            except MockUniqueViolation:
                raise MockAPIError(f"store_conflict:fire_event_claimed:{p_fire_event['key']}")

        if p_require_open_occupancy_id is not None:
            guarded = (
                self.table("stage_occupancies").select("*")
                .eq("id", p_require_open_occupancy_id).is_("exited_at", "null").execute()
            )
            if not guarded.data:
                raise MockAPIError(f"store_conflict:occupancy_closed:{p_require_open_occupancy_id}")

        if p_close_occupancy is not None:
            closed = (
                self.table("stage_occupancies")
                .update({"exited_at": p_close_occupancy["exited_at"]})
                .eq("id", p_close_occupancy["id"]).is_("exited_at", "null").execute()
            )
            if not closed.data:
                raise MockAPIError(f"store_conflict:occupancy_closed:{p_close_occupancy['id']}")

        if p_open_occupancy is not None:
            try:
                self.table("stage_occupancies").insert(p_open_occupancy).execute()
            except MockUniqueViolation:
                raise MockAPIError(
                    f"store_conflict:open_occupancy_exists:{p_open_occupancy['manuscript_id']}"
                )

        if p_invitation is not None:
            if p_expected_version is None:
                try:
                    self.table("review_invitations").insert(p_invitation).execute()
                except MockUniqueViolation:
                    raise MockAPIError(f"store_conflict:invitation_exists:{p_invitation['id']}")
            else:
                updated = (
                    self.table("review_invitations").update(p_invitation)
                    .eq("id", p_invitation["id"]).eq("version", p_expected_version).execute()
                )
                if not updated.data:
                    raise MockAPIError(f"store_conflict:version_mismatch:{p_invitation['id']}")

        if p_timeline:
            self.table("timeline_events").insert(p_timeline).execute()
        if p_notifications:
            self.table("notification_outbox").upsert(
                p_notifications, on_conflict="idempotency_key", ignore_duplicates=True
            ).execute()


# ==========================================
# CORE FIXTURES
# ==========================================

@pytest.fixture
def clock() -> ManualClock:
    """Manual clock starting at Monday 2025-01-06 09:00 UTC."""
    return ManualClock(T0)


@pytest.fixture
def store() -> InMemorySchedulingStore:
    """Fresh in-memory store per test."""
    return InMemorySchedulingStore()


@pytest.fixture
def sender() -> LogNotificationSender:
    """Log transport that records what it was asked to send."""
    return LogNotificationSender()


@pytest.fixture
def services(store, clock, sender):
    """Service container over the fresh store and manual clock, default stages seeded."""
    return build_services(store=store, clock=clock, sender=sender, config=settings)


@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    return MockSupabaseClient()


@pytest.fixture
def client(services) -> Generator[TestClient, None, None]:
    """
    Test client bound to the per-test service container.

    The scheduler does not start (RUN_SCHEDULER defaults to false).
    """
    set_services(services)
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    set_services(None)


# ==========================================
# FACTORY FIXTURES
# ==========================================

@pytest.fixture
def make_stage(services):
    """Factory fixture to create a stage definition."""
    def _create(
        stage_key: str = "test-stage",
        time_limit_days: int = 21,
        reminder_offset_days: Optional[list] = None,
        escalation_offset_days: Optional[list] = None,
        active: bool = True,
    ):
        definition, _ = services.stage_config.upsert({
            "stage_key": stage_key,
            "description": f"Stage {stage_key}",
            "time_limit_days": time_limit_days,
            "reminder_offset_days": reminder_offset_days if reminder_offset_days is not None else [],
            "escalation_offset_days": escalation_offset_days if escalation_offset_days is not None else [],
            "active": active,
        })
        return definition

    return _create


@pytest.fixture
def make_invitation(services, clock):
    """Factory fixture to invite a reviewer at the current clock time."""
    def _create(
        manuscript_id: Optional[str] = None,
        reviewer_id: str = "reviewer-1",
        reviewer_email: Optional[str] = "reviewer@university.edu",
    ):
        return services.invitations.invite(
            manuscript_id or f"MS-{uuid4().hex[:6]}",
            reviewer_id,
            at=clock.now(),
            reviewer_email=reviewer_email,
            reviewer_name="Dr. Reviewer",
        )

    return _create


# ==========================================
# MARKERS
# ==========================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (isolated, fast)")
    config.addinivalue_line("markers", "integration: Integration tests (store + services together)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full workflow through the API)")
    config.addinivalue_line("markers", "edge: Edge case tests")
