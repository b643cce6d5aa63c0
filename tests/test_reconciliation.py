"""
Tests for batched target saves and the editing session.
"""

import pytest
from unittest.mock import Mock

from src.api.auth import AuthRequired
from src.api.targets import NetworkFailure, TargetStoreAPIError
from src.processing.fiscal_calendar import InvalidPeriod
from src.processing.matrix import CellState, SaveInProgress, TargetMatrix
from src.processing.reconciliation import SaveResult, TargetEditingSession, TargetReconciler


PERIOD = "2025-09-01"


def make_payload():
    return {
        "kpis": [
            {"id": "sales", "name": "Sales", "unit": "yen"},
            {"id": "customers", "name": "Customers", "unit": "people"},
        ],
        "rows": [
            {
                "entityId": "Store-A",
                "entityName": "Store A",
                "values": {
                    "sales": {"persistedId": 101, "value": 1000000, "referenceValue": 950000},
                    "customers": {"persistedId": None, "value": None, "referenceValue": 300},
                },
            },
            {
                "entityId": "Store-B",
                "entityName": "Store B",
                "values": {
                    "sales": {"persistedId": 201, "value": 700000, "referenceValue": 650000},
                    "customers": {"persistedId": 202, "value": 5000, "referenceValue": 4800},
                },
            },
        ],
    }


def make_matrix() -> TargetMatrix:
    return TargetMatrix.from_payload("store", PERIOD, make_payload())


def make_client(response=None) -> Mock:
    client = Mock()
    client.get_matrix.return_value = make_payload()
    client.bulk_upsert.return_value = response or {"createdCount": 0, "updatedCount": 0, "errors": []}
    return client


def test_store_scenario_end_to_end():
    """Load, edit one cell, save: one request, cell re-baselined."""
    client = make_client({"createdCount": 0, "updatedCount": 1, "errors": []})
    session = TargetEditingSession(client=client, department="store")

    matrix = session.load(PERIOD)
    client.get_matrix.assert_called_once_with("store", PERIOD)
    assert matrix.yoy_rate("Store-A", "sales") == pytest.approx(5.26, abs=0.01)

    cell = matrix.commit("Store-A", "sales", "1,100,000")
    assert cell.state == CellState.DIRTY
    changes = matrix.compute_change_set()
    assert len(changes) == 1
    assert (changes[0].entity_id, changes[0].metric_id, changes[0].new_value) == ("Store-A", "sales", 1100000)

    result = session.save()

    client.bulk_upsert.assert_called_once_with(PERIOD, [
        {"entityId": "Store-A", "kpiId": "sales", "persistedId": 101, "value": 1100000},
    ])
    assert (result.created_count, result.updated_count, result.errors) == (0, 1, [])
    assert result.success
    assert cell.state == CellState.CLEAN
    assert cell.baseline_value == 1100000
    assert matrix.compute_change_set() == []


def test_clear_sends_explicit_null():
    """A cleared cell is sent with value None; untouched cells are not sent."""
    client = make_client({"createdCount": 0, "updatedCount": 1, "errors": []})
    matrix = make_matrix()
    matrix.commit("Store-B", "sales", "")

    TargetReconciler(client).save(matrix)

    sent = client.bulk_upsert.call_args[0][1]
    assert sent == [{"entityId": "Store-B", "kpiId": "sales", "persistedId": 201, "value": None}]
    assert matrix.cell("Store-B", "sales").baseline_value is None
    assert matrix.cell("Store-B", "sales").state == CellState.CLEAN


def test_empty_change_set_sends_nothing():
    client = make_client()
    result = TargetReconciler(client).save(make_matrix())

    client.bulk_upsert.assert_not_called()
    assert result == SaveResult()


def test_partial_rejection_isolated_to_cell():
    """One rejected cell does not block its siblings."""
    client = make_client({
        "createdCount": 0,
        "updatedCount": 1,
        "errors": [{"entityId": "Store-B", "kpiId": "customers", "message": "Value too large"}],
    })
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1,100,000")
    matrix.commit("Store-B", "customers", "9,999,999")

    result = TargetReconciler(client).save(matrix)

    assert client.bulk_upsert.call_count == 1
    assert len(client.bulk_upsert.call_args[0][1]) == 2
    assert not result.success
    assert result.errors[0].key == ("Store-B", "customers")
    assert result.errors[0].message == "Value too large"

    assert matrix.cell("Store-A", "sales").state == CellState.CLEAN
    failed = matrix.cell("Store-B", "customers")
    assert failed.state == CellState.SAVE_FAILED
    assert failed.current_value == 9999999
    assert failed.baseline_value == 5000
    assert failed.error == "Value too large"

    # Retry is explicit and resends only the failed cell
    client.bulk_upsert.reset_mock()
    client.bulk_upsert.return_value = {"createdCount": 0, "updatedCount": 1, "errors": []}
    TargetReconciler(client).save(matrix)

    client.bulk_upsert.assert_called_once_with(PERIOD, [
        {"entityId": "Store-B", "kpiId": "customers", "persistedId": 202, "value": 9999999},
    ])
    assert failed.state == CellState.CLEAN
    assert failed.error is None


def test_created_cells_get_persisted_id():
    client = make_client({
        "createdCount": 1,
        "updatedCount": 0,
        "errors": [],
        "items": [{"entityId": "Store-A", "kpiId": "customers", "persistedId": 555}],
    })
    matrix = make_matrix()
    matrix.commit("Store-A", "customers", "320")

    result = TargetReconciler(client).save(matrix)

    assert result.created_count == 1
    assert matrix.cell("Store-A", "customers").persisted_id == 555


@pytest.mark.parametrize("error", [
    NetworkFailure("Request timed out"),
    TargetStoreAPIError("Invalid period", status_code=422),
    AuthRequired("sign in again"),
])
def test_request_failure_leaves_cells_untouched(error):
    """A failed request re-raises and leaves every cell eligible for retry."""
    client = make_client()
    client.bulk_upsert.side_effect = error
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1,100,000")
    before = matrix.compute_change_set()

    with pytest.raises(type(error)):
        TargetReconciler(client).save(matrix)

    cell = matrix.cell("Store-A", "sales")
    assert cell.state == CellState.DIRTY
    assert cell.baseline_value == 1000000
    assert cell.current_value == 1100000
    assert not matrix.is_saving
    assert matrix.compute_change_set() == before


def test_network_failure_keeps_save_failed_state():
    """Cells already rejected stay rejected after a transport failure."""
    client = make_client({
        "createdCount": 0,
        "updatedCount": 0,
        "errors": [{"entityId": "Store-A", "kpiId": "sales", "message": "Locked"}],
    })
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1,100,000")
    TargetReconciler(client).save(matrix)

    client.bulk_upsert.side_effect = NetworkFailure("connection reset")
    with pytest.raises(NetworkFailure):
        TargetReconciler(client).save(matrix)

    cell = matrix.cell("Store-A", "sales")
    assert cell.state == CellState.SAVE_FAILED
    assert cell.error == "Locked"


def test_malformed_response_restores_cells():
    client = make_client({"createdCount": "many", "updatedCount": 0, "errors": []})
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1")

    with pytest.raises(TargetStoreAPIError):
        TargetReconciler(client).save(matrix)
    assert matrix.cell("Store-A", "sales").state == CellState.DIRTY


def test_unattributed_error_with_full_counts():
    """An unattributed error is reported; cells covered by the counts are confirmed."""
    client = make_client({"createdCount": 0, "updatedCount": 1, "errors": ["quota warning"]})
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1")

    result = TargetReconciler(client).save(matrix)

    assert not result.success
    assert result.errors[0].entity_id is None
    assert result.errors[0].message == "quota warning"
    assert matrix.cell("Store-A", "sales").state == CellState.CLEAN


def test_text_item_error_marks_its_cell():
    """Per-item failures reported as text still fail the named cell."""
    client = make_client({
        "created_count": 0,
        "updated_count": 1,
        "errors": ["店舗 Store-A, KPI sales: value out of range"],
    })
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1,100,000")
    matrix.commit("Store-B", "sales", "750,000")

    result = TargetReconciler(client).save(matrix)

    assert result.errors[0].key == ("Store-A", "sales")
    assert result.errors[0].message == "value out of range"

    failed = matrix.cell("Store-A", "sales")
    assert failed.state == CellState.SAVE_FAILED
    assert failed.baseline_value == 1000000
    assert failed.current_value == 1100000
    assert failed.error == "value out of range"
    assert [c.key for c in matrix.compute_change_set()] == [("Store-A", "sales")]

    assert matrix.cell("Store-B", "sales").state == CellState.CLEAN


def test_unattributed_error_short_counts_keeps_changes():
    """When the counts do not cover every entry, nothing is re-baselined."""
    client = make_client({"createdCount": 0, "updatedCount": 1, "errors": ["row 2 rejected"]})
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1,100,000")
    matrix.commit("Store-B", "sales", "750,000")

    result = TargetReconciler(client).save(matrix)

    assert not result.success
    for entity_id, baseline in (("Store-A", 1000000), ("Store-B", 700000)):
        cell = matrix.cell(entity_id, "sales")
        assert cell.state == CellState.SAVE_FAILED
        assert cell.baseline_value == baseline
        assert cell.error == "row 2 rejected"
    assert len(matrix.compute_change_set()) == 2


def test_create_then_clear_round_trip():
    """A value created without a returned id can still be cleared."""
    client = make_client({"createdCount": 1, "updatedCount": 0, "errors": []})
    matrix = make_matrix()
    reconciler = TargetReconciler(client)

    matrix.commit("Store-A", "customers", "320")
    reconciler.save(matrix)

    cell = matrix.cell("Store-A", "customers")
    assert cell.persisted_id is None
    assert cell.baseline_value == 320
    assert cell.state == CellState.CLEAN

    matrix.commit("Store-A", "customers", "")
    client.bulk_upsert.return_value = {"createdCount": 0, "updatedCount": 1, "errors": []}
    reconciler.save(matrix)

    assert client.bulk_upsert.call_args[0][1] == [
        {"entityId": "Store-A", "kpiId": "customers", "persistedId": None, "value": None},
    ]
    assert cell.baseline_value is None
    assert cell.state == CellState.CLEAN
    assert not matrix.has_changes


def test_save_sends_latest_edits():
    """The change set is taken when the save runs, not when it was last listed."""
    client = make_client({"createdCount": 0, "updatedCount": 1, "errors": []})
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1,100,000")
    matrix.compute_change_set()
    matrix.commit("Store-A", "sales", "1,200,000")

    TargetReconciler(client).save(matrix)

    assert client.bulk_upsert.call_args[0][1][0]["value"] == 1200000
    cell = matrix.cell("Store-A", "sales")
    assert cell.current_value == 1200000
    assert cell.baseline_value == 1200000


@pytest.mark.parametrize("period", ["2025-9-1", "2025-13-01", "September"])
def test_invalid_period_rejected_before_request(period):
    client = make_client()
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1")

    with pytest.raises(InvalidPeriod):
        TargetReconciler(client).save(matrix, period)
    client.bulk_upsert.assert_not_called()


def test_mismatched_period_rejected():
    client = make_client()
    matrix = make_matrix()
    matrix.commit("Store-A", "sales", "1")

    with pytest.raises(InvalidPeriod):
        TargetReconciler(client).save(matrix, "2025-10-01")
    client.bulk_upsert.assert_not_called()


def test_period_change_replaces_matrix():
    """Switching period loads a fresh matrix; edits do not carry over."""
    client = make_client()
    session = TargetEditingSession(client=client, department="store")

    first = session.load(PERIOD)
    first.commit("Store-A", "sales", "1")
    second = session.load("2025-10-01")

    assert second is not first
    assert session.period == "2025-10-01"
    assert second.compute_change_set() == []
    client.get_matrix.assert_called_with("store", "2025-10-01")


def test_period_change_rejected_while_saving():
    """Selecting another period during an outstanding save is refused."""
    client = make_client()
    session = TargetEditingSession(client=client, department="store")
    matrix = session.load(PERIOD)
    matrix.commit("Store-A", "sales", "1")
    attempts = []

    def bulk_upsert(period, changes):
        with pytest.raises(SaveInProgress):
            session.load("2025-10-01")
        attempts.append(period)
        return {"createdCount": 0, "updatedCount": 1, "errors": []}

    client.bulk_upsert.side_effect = bulk_upsert
    session.save()

    assert attempts == [PERIOD]
    assert session.matrix is matrix
    assert client.get_matrix.call_count == 1


def test_session_invalid_period_and_department():
    client = make_client()
    session = TargetEditingSession(client=client, department="store")

    with pytest.raises(InvalidPeriod):
        session.load("2025-09")
    client.get_matrix.assert_not_called()

    with pytest.raises(ValueError):
        TargetEditingSession(client=client, department="complaints")

    with pytest.raises(RuntimeError):
        session.save()


def test_session_overview():
    """Department status rows from the overview endpoint."""
    client = make_client()
    client.get_overview.return_value = {
        "fiscalYear": 2025,
        "period": PERIOD,
        "departments": [
            {"departmentType": "store", "departmentName": "Stores", "hasTargets": True,
             "targetCount": 12, "lastUpdated": "2025-09-03T10:00:00"},
            {"department_type": "financial", "department_name": "Finance", "has_targets": False,
             "target_count": 0, "last_updated": None},
        ],
    }
    session = TargetEditingSession(client=client, department="store")

    df = session.overview(PERIOD)

    client.get_overview.assert_called_once_with(PERIOD)
    assert list(df["department"]) == ["store", "financial"]
    assert list(df["has_targets"]) == [True, False]
    assert list(df["target_count"]) == [12, 0]

    with pytest.raises(InvalidPeriod):
        session.overview("2025-09")


def test_session_summary():
    client = make_client()
    session = TargetEditingSession(client=client, department="store")
    assert session.summary() == {"department": "store", "period": None}

    matrix = session.load(PERIOD)
    matrix.commit("Store-A", "sales", "1")

    summary = session.summary()
    assert summary["cells"] == 4
    assert summary["dirty"] == 1
    assert summary["pending_changes"] == 1
