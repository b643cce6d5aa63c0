"""
Target Matrix Module

Change-tracked editor for per-(entity, metric) target values of one
department and one fiscal month.

Each cell keeps the last confirmed server value (baseline) next to the
operator's current value. Cells move through the states:

    CLEAN --commit--> DIRTY --mark_saving--> SAVING --confirm_saved--> CLEAN
                        ^                       |
                        |                       +--mark_failed--> SAVE_FAILED
                        +-- commit back to baseline returns to CLEAN

Only DIRTY and SAVE_FAILED cells make it into a change set.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .metrics import yoy_rate
from .number_format import InvalidNumericInput, format_locale_number, parse_locale_number

logger = logging.getLogger(__name__)

CellKey = Tuple[str, str]


class CellState(str, Enum):
    """Edit state of a target cell."""
    CLEAN = "clean"
    DIRTY = "dirty"
    SAVING = "saving"
    SAVE_FAILED = "save_failed"


def _same_value(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a == b


def pick_key(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (camelCase or snake_case payloads)."""
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass
class KpiDefinition:
    """A metric column of the matrix."""
    id: str
    name: str = ""
    unit: str = ""


@dataclass(frozen=True)
class ChangeEntry:
    """One modified cell, as sent in a bulk upsert."""

    entity_id: str
    metric_id: str
    persisted_id: Any
    new_value: Optional[float]
    original_value: Optional[float]

    @property
    def key(self) -> CellKey:
        return (self.entity_id, self.metric_id)

    def to_payload(self) -> Dict[str, Any]:
        """Wire form of the change (original_value stays client-side)."""
        return {
            "entityId": self.entity_id,
            "kpiId": self.metric_id,
            "persistedId": self.persisted_id,
            "value": self.new_value,
        }


@dataclass
class TargetCell:
    """
    Target value of one (entity, metric) pair.

    reference_value is the prior-year actual supplied by the server; it is
    only used to display YoY and is never sent back.
    """

    entity_id: str
    metric_id: str
    persisted_id: Any = None
    current_value: Optional[float] = None
    baseline_value: Optional[float] = None
    reference_value: Optional[float] = None
    read_only: bool = False
    state: CellState = CellState.CLEAN
    text: str = ""
    input_error: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        if not self.text:
            self.text = format_locale_number(self.current_value)

    @property
    def key(self) -> CellKey:
        return (self.entity_id, self.metric_id)

    @property
    def is_clean(self) -> bool:
        return _same_value(self.current_value, self.baseline_value)

    @property
    def yoy_rate(self) -> Optional[float]:
        return yoy_rate(self.current_value, self.reference_value)

    def _check_editable(self) -> None:
        if self.read_only:
            raise ReadOnlyCell(f"Cell {self.entity_id}/{self.metric_id} is calculated and cannot be edited")
        if self.state == CellState.SAVING:
            raise SaveInProgress(f"Cell {self.entity_id}/{self.metric_id} is being saved")

    def _apply(self, value: Optional[float]) -> None:
        unchanged = _same_value(value, self.current_value)
        self.current_value = value
        self.text = format_locale_number(value)
        self.input_error = None
        if self.is_clean:
            self.state = CellState.CLEAN
            self.error = None
        elif unchanged and self.state == CellState.SAVE_FAILED:
            # Blur without a new value keeps the rejection visible
            return
        else:
            self.state = CellState.DIRTY
            self.error = None

    def commit_text(self, text: Optional[str], allow_negative: bool = True) -> None:
        """
        Commit edited text (on blur / enter).

        Raises:
            InvalidNumericInput: Text does not parse; numeric state is unchanged
            SaveInProgress: The cell is part of an outstanding save
            ReadOnlyCell: The cell is calculated
        """
        self._check_editable()
        try:
            value = parse_locale_number(text, allow_negative=allow_negative)
        except InvalidNumericInput as e:
            self.input_error = e.message
            raise

        # Typing the baseline's displayed form back is an undo
        if format_locale_number(value) == format_locale_number(self.baseline_value):
            value = self.baseline_value
        self._apply(value)

    def set_value(self, value: Optional[float]) -> None:
        self._check_editable()
        if value is not None and pd.isna(value):
            value = None
        self._apply(value)

    def revert_input(self) -> None:
        """Restore the last valid text after a rejected commit."""
        self.text = format_locale_number(self.current_value)
        self.input_error = None


class TargetMatrix:
    """
    All target cells of one (department, period) editing session.

    The matrix is replaced wholesale when the period changes; nothing carries
    over from one period to the next.
    """

    def __init__(
        self,
        department: str,
        period: str,
        kpis: Optional[Iterable[KpiDefinition]] = None,
        allow_negative: bool = True
    ):
        """
        Initialize an empty matrix.

        Args:
            department: Department slug (e.g. "store")
            period: Period key "YYYY-MM-01"
            kpis: Metric definitions, in display order
            allow_negative: Accept negative target values
        """
        self.department = department
        self.period = period
        self.kpis: List[KpiDefinition] = list(kpis or [])
        self.allow_negative = allow_negative
        self.entity_names: Dict[str, str] = {}
        self._cells: Dict[CellKey, TargetCell] = {}

    @classmethod
    def from_payload(
        cls,
        department: str,
        period: str,
        payload: Dict[str, Any],
        allow_negative: bool = True,
        read_only_metrics: Optional[Iterable[CellKey]] = None,
        fill_missing: bool = True
    ) -> "TargetMatrix":
        """
        Build a clean matrix from a Target Store matrix response.

        With fill_missing, every (row, kpi) pair gets a cell; pairs the server
        has no row for start empty so a target can be created for them.
        Otherwise only the pairs listed in each row's values are loaded.

        Args:
            department: Department slug
            period: Period key
            payload: {"kpis": [...], "rows": [{"entityId", "entityName", "values": {...}}]}
            allow_negative: Accept negative target values
            read_only_metrics: (entity, metric) keys that are calculated
            fill_missing: Create empty cells for pairs absent from the payload

        Returns:
            TargetMatrix with every cell CLEAN
        """
        read_only = set(read_only_metrics or [])
        kpis = [
            KpiDefinition(
                id=str(k["id"]),
                name=k.get("name", "") or "",
                unit=k.get("unit", "") or ""
            )
            for k in payload.get("kpis", [])
        ]
        matrix = cls(department, period, kpis=kpis, allow_negative=allow_negative)

        for row in payload.get("rows", []):
            entity_id = str(pick_key(row, "entityId", "entity_id", "segment_id"))
            entity_name = pick_key(row, "entityName", "entity_name", "segment_name")
            values = row.get("values", {}) or {}
            for kpi in kpis:
                if not fill_missing and kpi.id not in values:
                    continue
                raw = values.get(kpi.id) or {}
                matrix.add_cell(
                    entity_id,
                    kpi.id,
                    persisted_id=pick_key(raw, "persistedId", "persisted_id", "target_id"),
                    value=pick_key(raw, "value"),
                    reference_value=pick_key(raw, "referenceValue", "reference_value", "last_year_actual"),
                    read_only=(entity_id, kpi.id) in read_only,
                    entity_name=entity_name
                )

        logger.info(
            f"Loaded {department} targets for {period}: "
            f"{len(matrix.entity_names)} entities x {len(kpis)} KPIs ({len(matrix)} cells)"
        )
        return matrix

    def add_cell(
        self,
        entity_id: str,
        metric_id: str,
        persisted_id: Any = None,
        value: Optional[float] = None,
        reference_value: Optional[float] = None,
        read_only: bool = False,
        entity_name: Optional[str] = None
    ) -> TargetCell:
        """Register a cell loaded from the server (baseline := value)."""
        if value is not None and pd.isna(value):
            value = None
        cell = TargetCell(
            entity_id=entity_id,
            metric_id=metric_id,
            persisted_id=persisted_id,
            current_value=value,
            baseline_value=value,
            reference_value=reference_value,
            read_only=read_only
        )
        self._cells[cell.key] = cell
        if entity_id not in self.entity_names:
            self.entity_names[entity_id] = entity_name or entity_id
        if metric_id not in {k.id for k in self.kpis}:
            self.kpis.append(KpiDefinition(id=metric_id, name=metric_id))
        return cell

    def __len__(self) -> int:
        return len(self._cells)

    def __contains__(self, key: CellKey) -> bool:
        return key in self._cells

    def cell(self, entity_id: str, metric_id: str) -> TargetCell:
        try:
            return self._cells[(entity_id, metric_id)]
        except KeyError:
            raise KeyError(f"No target cell for {entity_id}/{metric_id} in {self.department} {self.period}")

    def cells(self) -> List[TargetCell]:
        """All cells ordered by entity then metric."""
        return [self._cells[k] for k in sorted(self._cells, key=lambda k: (str(k[0]), str(k[1])))]

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def commit(self, entity_id: str, metric_id: str, text: Optional[str]) -> TargetCell:
        """
        Commit edited text for a cell.

        Args:
            entity_id: Entity (store, section, channel)
            metric_id: KPI / line item id
            text: Cell text as typed ("" clears the value)

        Returns:
            The updated cell

        Raises:
            InvalidNumericInput: The text does not parse (cell keeps its value)
            SaveInProgress: A save is outstanding
        """
        self._check_not_saving()
        cell = self.cell(entity_id, metric_id)
        cell.commit_text(text, allow_negative=self.allow_negative)
        return cell

    def set_value(self, entity_id: str, metric_id: str, value: Optional[float]) -> TargetCell:
        self._check_not_saving()
        cell = self.cell(entity_id, metric_id)
        cell.set_value(value)
        return cell

    def revert_input(self, entity_id: str, metric_id: str) -> TargetCell:
        cell = self.cell(entity_id, metric_id)
        cell.revert_input()
        return cell

    def reset(self) -> None:
        """Discard every unsaved edit."""
        self._check_not_saving()
        for cell in self._cells.values():
            cell.current_value = cell.baseline_value
            cell.text = format_locale_number(cell.baseline_value)
            cell.input_error = None
            cell.error = None
            cell.state = CellState.CLEAN

    def _check_not_saving(self) -> None:
        if self.is_saving:
            raise SaveInProgress(f"A save is in progress for {self.department} {self.period}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_saving(self) -> bool:
        return any(c.state == CellState.SAVING for c in self._cells.values())

    @property
    def has_changes(self) -> bool:
        return any(not c.is_clean for c in self._cells.values())

    def dirty_cells(self) -> List[TargetCell]:
        return [c for c in self.cells() if c.state == CellState.DIRTY]

    def failed_cells(self) -> List[TargetCell]:
        return [c for c in self.cells() if c.state == CellState.SAVE_FAILED]

    def yoy_rate(self, entity_id: str, metric_id: str) -> Optional[float]:
        """Live YoY of the current value against the prior-year actual."""
        return self.cell(entity_id, metric_id).yoy_rate

    def compute_change_set(self) -> List[ChangeEntry]:
        """
        List the cells that differ from their baseline.

        Only DIRTY and SAVE_FAILED cells are considered. A cell cleared from a
        non-null baseline is included with new_value None, whether or not its
        persisted id is known; an empty cell the server never had a value
        for is skipped since there is nothing to create.

        Returns:
            Change entries ordered by entity then metric
        """
        changes: List[ChangeEntry] = []
        for cell in self.cells():
            if cell.state not in (CellState.DIRTY, CellState.SAVE_FAILED):
                continue
            if cell.is_clean:
                continue
            if cell.persisted_id is None and cell.baseline_value is None and cell.current_value is None:
                continue
            changes.append(ChangeEntry(
                entity_id=cell.entity_id,
                metric_id=cell.metric_id,
                persisted_id=cell.persisted_id,
                new_value=cell.current_value,
                original_value=cell.baseline_value
            ))
        return changes

    # ------------------------------------------------------------------
    # Save bookkeeping
    # ------------------------------------------------------------------

    def mark_saving(self, change_set: List[ChangeEntry]) -> Dict[CellKey, Tuple[CellState, Optional[str]]]:
        """
        Move the cells of a change set to SAVING.

        Returns:
            Snapshot of the previous states, for restore()
        """
        self._check_not_saving()
        snapshot = {}
        for entry in change_set:
            cell = self.cell(*entry.key)
            snapshot[entry.key] = (cell.state, cell.error)
            cell.state = CellState.SAVING
        return snapshot

    def confirm_saved(self, entry: ChangeEntry, persisted_id: Any = None) -> TargetCell:
        """Re-baseline a saved cell."""
        cell = self.cell(*entry.key)
        cell.baseline_value = entry.new_value
        cell.current_value = entry.new_value
        cell.text = format_locale_number(entry.new_value)
        if persisted_id is not None:
            cell.persisted_id = persisted_id
        cell.error = None
        cell.state = CellState.CLEAN
        return cell

    def mark_failed(self, entry: ChangeEntry, message: str) -> TargetCell:
        """Flag a rejected cell; the operator's value is kept for a retry."""
        cell = self.cell(*entry.key)
        cell.error = message
        cell.state = CellState.SAVE_FAILED
        return cell

    def restore(self, snapshot: Dict[CellKey, Tuple[CellState, Optional[str]]]) -> None:
        """Undo mark_saving after a request that never reached a verdict."""
        for key, (state, error) in snapshot.items():
            cell = self._cells[key]
            cell.state = state
            cell.error = error

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_frame(self) -> pd.DataFrame:
        """
        Render the matrix as one row per cell.

        Returns:
            DataFrame with entity, metric, target, baseline, reference, YoY and state
        """
        kpi_names = {k.id: k.name or k.id for k in self.kpis}
        records = []
        for cell in self.cells():
            records.append({
                "entity_id": cell.entity_id,
                "entity_name": self.entity_names.get(cell.entity_id, cell.entity_id),
                "metric_id": cell.metric_id,
                "metric_name": kpi_names.get(cell.metric_id, cell.metric_id),
                "target": cell.current_value,
                "baseline": cell.baseline_value,
                "reference": cell.reference_value,
                "yoy_rate": cell.yoy_rate,
                "state": cell.state.value,
                "error": cell.error,
            })
        columns = [
            "entity_id", "entity_name", "metric_id", "metric_name", "target",
            "baseline", "reference", "yoy_rate", "state", "error"
        ]
        return pd.DataFrame(records, columns=columns)


class SaveInProgress(RuntimeError):
    """Raised when editing or reloading while a save is outstanding."""
    pass


class ReadOnlyCell(ValueError):
    """Raised when editing a calculated cell."""
    pass
