"""
Department Adapters Module

Maps each department's target payload onto the generic (entity, metric)
matrix so one editor serves every target screen:

- store:     entities = stores, metrics = KPIs (generic matrix payload)
- financial: entities = P&L sections, metrics = line items
- ecommerce: entities = sales channels (+ "customers"), metrics = sales/buyers
"""

from typing import Any, Dict, Iterable, List, Optional

from config.settings import DEPARTMENTS
from .matrix import CellKey, TargetMatrix
from .metrics import gross_profit, operating_profit, sales_ratio, yoy_rate


class MatrixAdapter:
    """
    Base adapter: the server already returns the generic matrix payload.

    Subclasses override fetch() and to_matrix_payload() for their own shapes.
    """

    department = "store"
    allow_negative = False
    fill_missing = True

    def fetch(self, client, period: str) -> Dict[str, Any]:
        return client.get_matrix(self.department, period)

    def to_matrix_payload(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return raw

    def read_only_keys(self, raw: Dict[str, Any]) -> List[CellKey]:
        return []

    def build(self, period: str, raw: Dict[str, Any]) -> TargetMatrix:
        """Convert a raw payload into a clean matrix."""
        return TargetMatrix.from_payload(
            self.department,
            period,
            self.to_matrix_payload(raw),
            allow_negative=self.allow_negative,
            read_only_metrics=self.read_only_keys(raw),
            fill_missing=self.fill_missing
        )

    def load(self, client, period: str) -> TargetMatrix:
        """
        Fetch and build the matrix for one month.

        Args:
            client: TargetStoreClient
            period: Period key "YYYY-MM-01"

        Returns:
            Fresh matrix with every cell CLEAN
        """
        return self.build(period, self.fetch(client, period))


class StoreTargetAdapter(MatrixAdapter):
    """Store KPI targets (non-negative)."""
    department = "store"


# (entity id, payload key, display name)
FINANCIAL_SECTIONS = [
    ("summary", "summary_items", "Summary"),
    ("cost", "cost_items", "Cost of sales"),
    ("sga", "sga_items", "SG&A"),
]


class FinancialTargetAdapter(MatrixAdapter):
    """
    P&L targets.

    Each section becomes an entity and each line item a metric. Calculated
    rows (gross profit, operating profit) load read-only.
    """

    department = "financial"
    allow_negative = True
    fill_missing = False

    def fetch(self, client, period: str) -> Dict[str, Any]:
        return client.get_department_targets(self.department, period)

    def to_matrix_payload(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        kpis: List[Dict[str, Any]] = []
        seen = set()
        rows = []
        for entity_id, key, name in FINANCIAL_SECTIONS:
            values = {}
            for item in raw.get(key, []) or []:
                field_name = item["field_name"]
                if field_name not in seen:
                    seen.add(field_name)
                    kpis.append({"id": field_name, "name": item.get("display_name", field_name), "unit": "yen"})
                values[field_name] = {
                    "persistedId": item.get("target_id"),
                    "value": item.get("target_value"),
                    "referenceValue": item.get("last_year_actual"),
                }
            rows.append({"entityId": entity_id, "entityName": name, "values": values})
        return {"kpis": kpis, "rows": rows}

    def read_only_keys(self, raw: Dict[str, Any]) -> List[CellKey]:
        keys = []
        for entity_id, key, _ in FINANCIAL_SECTIONS:
            for item in raw.get(key, []) or []:
                if item.get("is_calculated"):
                    keys.append((entity_id, item["field_name"]))
        return keys


def _current(matrix: TargetMatrix, entity_id: str, metric_id: str) -> Optional[float]:
    if (entity_id, metric_id) not in matrix:
        return None
    return matrix.cell(entity_id, metric_id).current_value


def _reference(matrix: TargetMatrix, entity_id: str, metric_id: str) -> Optional[float]:
    if (entity_id, metric_id) not in matrix:
        return None
    return matrix.cell(entity_id, metric_id).reference_value


def financial_derived(matrix: TargetMatrix) -> Dict[str, Any]:
    """
    Compute the financial form's live values from current inputs.

    Gross profit = sales total - cost of sales; operating profit = gross
    profit - SG&A total. Sales ratios are per cell against the current
    sales total.

    Args:
        matrix: Financial target matrix

    Returns:
        Dict with sales_total, gross_profit, operating_profit, their YoY and sales_ratios
    """
    sales_total = _current(matrix, "summary", "sales_total")
    gross = gross_profit(sales_total, _current(matrix, "summary", "cost_of_sales"))
    operating = operating_profit(gross, _current(matrix, "summary", "sga_total"))

    ratios = {}
    for cell in matrix.cells():
        ratios[cell.key] = sales_ratio(cell.current_value, sales_total)

    return {
        "sales_total": sales_total,
        "gross_profit": gross,
        "operating_profit": operating,
        "gross_profit_yoy": yoy_rate(gross, _reference(matrix, "summary", "gross_profit")),
        "operating_profit_yoy": yoy_rate(operating, _reference(matrix, "summary", "operating_profit")),
        "sales_ratios": ratios,
    }


CUSTOMER_ENTITY = "customers"

ECOMMERCE_KPIS = [
    {"id": "sales", "name": "Sales", "unit": "yen"},
    {"id": "buyers", "name": "Buyers", "unit": "people"},
    {"id": "new_customers", "name": "New customers", "unit": "people"},
    {"id": "repeat_customers", "name": "Repeat customers", "unit": "people"},
]


class EcommerceTargetAdapter(MatrixAdapter):
    """Per-channel sales/buyer targets plus customer-count targets."""

    department = "ecommerce"
    fill_missing = False

    def fetch(self, client, period: str) -> Dict[str, Any]:
        return client.get_department_targets(self.department, period)

    def to_matrix_payload(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        rows = []
        for ch in raw.get("channel_targets", []) or []:
            rows.append({
                "entityId": ch["channel"],
                "entityName": ch["channel"],
                "values": {
                    "sales": {
                        "persistedId": ch.get("sales_target_id"),
                        "value": ch.get("target_sales"),
                        "referenceValue": ch.get("last_year_sales"),
                    },
                    "buyers": {
                        "persistedId": ch.get("buyers_target_id"),
                        "value": ch.get("target_buyers"),
                        "referenceValue": ch.get("last_year_buyers"),
                    },
                },
            })

        customer = raw.get("customer_target")
        if customer is not None:
            rows.append({
                "entityId": CUSTOMER_ENTITY,
                "entityName": "Customers",
                "values": {
                    "new_customers": {
                        "persistedId": customer.get("new_customers_target_id"),
                        "value": customer.get("new_customers"),
                        "referenceValue": customer.get("last_year_new"),
                    },
                    "repeat_customers": {
                        "persistedId": customer.get("repeat_customers_target_id"),
                        "value": customer.get("repeat_customers"),
                        "referenceValue": customer.get("last_year_repeat"),
                    },
                },
            })
        return {"kpis": ECOMMERCE_KPIS, "rows": rows}


def _sum_present(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return sum(present) if present else None


def ecommerce_totals(matrix: TargetMatrix) -> Dict[str, Optional[float]]:
    """Total channel sales target, last year's total and their YoY."""
    channels = [e for e in matrix.entity_names if e != CUSTOMER_ENTITY]
    total = _sum_present(_current(matrix, ch, "sales") for ch in channels)
    last_year = _sum_present(_reference(matrix, ch, "sales") for ch in channels)
    return {
        "total_target_sales": total,
        "last_year_total_sales": last_year,
        "yoy_total_rate": yoy_rate(total, last_year),
    }


ADAPTERS = {
    "store": StoreTargetAdapter,
    "financial": FinancialTargetAdapter,
    "ecommerce": EcommerceTargetAdapter,
}


def get_adapter(department: str) -> MatrixAdapter:
    """
    Get the adapter for a department slug.

    Raises:
        ValueError: If the department has no target screen
    """
    if department not in DEPARTMENTS or department not in ADAPTERS:
        raise ValueError(f"Unknown department: {department!r} (expected one of {DEPARTMENTS})")
    return ADAPTERS[department]()
