"""
Target Reconciliation Module

Sends a matrix's change set to the Target Store in one bulk-upsert request
and re-baselines the cells from the response.

The batch is a set of independent sub-operations: a rejected cell moves to
SAVE_FAILED without blocking its siblings. A request that fails as a whole
(transport error, authentication) leaves every cell as it was so the same
change set can be resubmitted. Nothing is retried automatically.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from config.settings import settings
from src.api.auth import AuthRequired
from src.api.targets import TargetStoreClient, TargetStoreAPIError
from .adapters import MatrixAdapter, get_adapter
from .fiscal_calendar import InvalidPeriod, default_period_key, parse_period_key
from .matrix import CellKey, SaveInProgress, TargetMatrix, pick_key

logger = logging.getLogger(__name__)

# Per-item failure reported as text by the store: "<label> <entity>, KPI <kpi>: <message>"
_ITEM_ERROR = re.compile(r"^\S+ (?P<entity>.+?), KPI (?P<kpi>[^:]+): (?P<message>.*)$", re.DOTALL)


@dataclass
class CellRejected:
    """Server-side validation failure for one (entity, metric) pair."""
    entity_id: Optional[str]
    metric_id: Optional[str]
    message: str

    @property
    def key(self) -> CellKey:
        return (self.entity_id, self.metric_id)


@dataclass
class SaveResult:
    """Outcome of one bulk upsert."""
    created_count: int = 0
    updated_count: int = 0
    errors: List[CellRejected] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class TargetReconciler:
    """
    Reconciles a matrix's modified cells against the Target Store.
    """

    def __init__(self, client: Optional[TargetStoreClient] = None):
        """
        Initialize the reconciler.

        Args:
            client: TargetStoreClient (creates new one if not provided)
        """
        self.client = client or TargetStoreClient()

    @staticmethod
    def _parse_errors(response: Dict[str, Any]) -> List[CellRejected]:
        rejected = []
        for err in response.get("errors", []) or []:
            if isinstance(err, dict):
                entity_id = pick_key(err, "entityId", "entity_id", "segment_id")
                metric_id = pick_key(err, "kpiId", "kpi_id", "metricId")
                rejected.append(CellRejected(
                    entity_id=str(entity_id) if entity_id is not None else None,
                    metric_id=str(metric_id) if metric_id is not None else None,
                    message=err.get("message", "Rejected by server")
                ))
            else:
                match = _ITEM_ERROR.match(str(err).strip())
                if match:
                    rejected.append(CellRejected(
                        entity_id=match.group("entity").strip(),
                        metric_id=match.group("kpi").strip(),
                        message=match.group("message").strip() or str(err)
                    ))
                else:
                    rejected.append(CellRejected(entity_id=None, metric_id=None, message=str(err)))
        return rejected

    @staticmethod
    def _parse_persisted_ids(response: Dict[str, Any]) -> Dict[CellKey, Any]:
        ids = {}
        for item in response.get("items", []) or []:
            persisted_id = pick_key(item, "persistedId", "persisted_id", "id")
            if persisted_id is None:
                continue
            entity_id = str(pick_key(item, "entityId", "entity_id", "segment_id"))
            metric_id = str(pick_key(item, "kpiId", "kpi_id", "metricId"))
            ids[(entity_id, metric_id)] = persisted_id
        return ids

    def save(self, matrix: TargetMatrix, period: Optional[str] = None) -> SaveResult:
        """
        Save the matrix's modified cells in one request.

        The change set is computed here, at the moment of the save. Cells the
        response does not prove saved stay SAVE_FAILED: when some errors
        cannot be tied to a cell and the created/updated counts do not cover
        every unrejected entry, none of those entries is re-baselined.

        Args:
            matrix: Matrix being edited
            period: Period key (defaults to the matrix's period)

        Returns:
            SaveResult with created/updated counts and per-cell rejections

        Raises:
            InvalidPeriod: Malformed or mismatching period (no request sent)
            SaveInProgress: Another save for this matrix is outstanding
            NetworkFailure: Transport failure; cells are left as they were
            TargetStoreAPIError: Request rejected as a whole; cells left as they were
            AuthRequired: Authentication needed; batch aborted
        """
        period = period or matrix.period
        parse_period_key(period)
        if period != matrix.period:
            raise InvalidPeriod(f"Matrix holds {matrix.period}, cannot save it as {period}")

        changes = matrix.compute_change_set()
        if not changes:
            logger.info(f"No target changes to save for {matrix.department} {period}")
            return SaveResult()

        snapshot = matrix.mark_saving(changes)
        try:
            response = self.client.bulk_upsert(period, [c.to_payload() for c in changes])
            if not isinstance(response, dict):
                raise TargetStoreAPIError(f"Unexpected bulk-upsert response: {response!r}")
            rejected = self._parse_errors(response)
            persisted_ids = self._parse_persisted_ids(response)
            result = SaveResult(
                created_count=int(pick_key(response, "createdCount", "created_count", default=0) or 0),
                updated_count=int(pick_key(response, "updatedCount", "updated_count", default=0) or 0),
                errors=rejected
            )
        except AuthRequired:
            matrix.restore(snapshot)
            logger.warning(f"Save aborted for {matrix.department} {period}: authentication required")
            raise
        except TargetStoreAPIError as e:
            matrix.restore(snapshot)
            logger.error(f"Save failed for {matrix.department} {period}: {e}")
            raise
        except (ValueError, TypeError, AttributeError) as e:
            matrix.restore(snapshot)
            logger.error(f"Save failed for {matrix.department} {period}: malformed response: {e}")
            raise TargetStoreAPIError(f"Malformed bulk-upsert response: {e}")

        change_keys = {c.key for c in changes}
        rejected_by_key = {r.key: r for r in rejected if r.key in change_keys}
        unattributed = [r for r in rejected if r.key not in change_keys]
        for r in unattributed:
            logger.warning(f"  Unattributed save error: {r.message}")

        accepted = [c for c in changes if c.key not in rejected_by_key]
        # Without a per-cell verdict, only trust the counts
        unconfirmed = bool(unattributed) and (
            result.created_count + result.updated_count < len(accepted)
        )
        unconfirmed_message = "; ".join(r.message for r in unattributed)

        for entry in changes:
            rejection = rejected_by_key.get(entry.key)
            if rejection is not None:
                matrix.mark_failed(entry, rejection.message)
                logger.warning(f"  Rejected {entry.entity_id}/{entry.metric_id}: {rejection.message}")
            elif unconfirmed:
                matrix.mark_failed(entry, unconfirmed_message)
                logger.warning(f"  Not confirmed {entry.entity_id}/{entry.metric_id}: {unconfirmed_message}")
            else:
                matrix.confirm_saved(entry, persisted_ids.get(entry.key))

        logger.info(
            f"Saved {matrix.department} {period}: {result.created_count} created, "
            f"{result.updated_count} updated, {len(rejected)} errors"
        )
        return result


def overview_frame(payload: Dict[str, Any]) -> pd.DataFrame:
    """
    Flatten a target overview response into one row per department.

    Args:
        payload: {"fiscalYear", "period", "departments": [...]} (snake_case accepted)

    Returns:
        DataFrame with department, name, has_targets, target_count, last_updated
    """
    records = []
    for dept in payload.get("departments", []) or []:
        records.append({
            "department": pick_key(dept, "departmentType", "department_type"),
            "name": pick_key(dept, "departmentName", "department_name", default=""),
            "has_targets": bool(pick_key(dept, "hasTargets", "has_targets", default=False)),
            "target_count": int(pick_key(dept, "targetCount", "target_count", default=0) or 0),
            "last_updated": pick_key(dept, "lastUpdated", "last_updated"),
        })
    columns = ["department", "name", "has_targets", "target_count", "last_updated"]
    return pd.DataFrame(records, columns=columns)


class TargetEditingSession:
    """
    One operator's editing session for a department.

    Owns the matrix of the selected period; selecting another period
    replaces it with a freshly loaded one.
    """

    def __init__(
        self,
        client: Optional[TargetStoreClient] = None,
        department: Optional[str] = None,
        adapter: Optional[MatrixAdapter] = None
    ):
        self.client = client or TargetStoreClient()
        self.department = department or settings.default_department
        self.adapter = adapter or get_adapter(self.department)
        self.reconciler = TargetReconciler(self.client)
        self.matrix: Optional[TargetMatrix] = None
        self._saving = False

    @property
    def period(self) -> Optional[str]:
        return self.matrix.period if self.matrix is not None else None

    def load(self, period: Optional[str] = None) -> TargetMatrix:
        """
        Load (or switch to) a period, discarding the current matrix.

        Args:
            period: Period key (defaults to the previous calendar month)

        Returns:
            The new matrix

        Raises:
            SaveInProgress: A save is outstanding
            InvalidPeriod: Malformed period key (no request sent)
        """
        if self._saving or (self.matrix is not None and self.matrix.is_saving):
            raise SaveInProgress("Cannot change period while a save is in progress")
        period = period or default_period_key()
        parse_period_key(period)
        self.matrix = self.adapter.load(self.client, period)
        return self.matrix

    def reload(self) -> TargetMatrix:
        if self.matrix is None:
            raise RuntimeError("No period loaded")
        return self.load(self.matrix.period)

    def save(self) -> SaveResult:
        """Save the current matrix's changes."""
        if self.matrix is None:
            raise RuntimeError("No period loaded")
        if self._saving:
            raise SaveInProgress("A save is already in progress")
        self._saving = True
        try:
            return self.reconciler.save(self.matrix)
        finally:
            self._saving = False

    def overview(self, period: Optional[str] = None) -> pd.DataFrame:
        """Target-setting status of every department for a period."""
        period = period or self.period or default_period_key()
        parse_period_key(period)
        return overview_frame(self.client.get_overview(period))

    def summary(self) -> Dict[str, Any]:
        """Counts for status displays."""
        if self.matrix is None:
            return {"department": self.department, "period": None}
        return {
            "department": self.department,
            "period": self.matrix.period,
            "cells": len(self.matrix),
            "dirty": len(self.matrix.dirty_cells()),
            "failed": len(self.matrix.failed_cells()),
            "pending_changes": len(self.matrix.compute_change_set()),
        }
