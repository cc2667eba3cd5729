from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import fakeredis
import pytest

from invoice_pipeline.queues.invoice_queues import create_invoice_queues
from invoice_pipeline.services.invoice_repository import SupabaseInvoiceDAO


class FakeClock:
    """Millisecond clock the tests move forward by hand."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += milliseconds


class FakeInvoiceDAO(SupabaseInvoiceDAO):
    """In-memory stand-in for the Supabase tables of one tenant."""

    def __init__(self, tenant_id: int = 1) -> None:
        super().__init__(tenant_id, "test-token")
        self.invoices: Dict[int, Dict[str, Any]] = {}
        self.lines: Dict[int, List[Dict[str, Any]]] = {}
        self.products: List[Dict[str, Any]] = []
        self.history: List[Dict[str, Any]] = []
        self.processing_metrics: List[Dict[str, Any]] = []
        self.worker_metrics: List[Dict[str, Any]] = []
        self._next_invoice_id = 1
        self._next_line_id = 1

    def add_invoice(self, **fields: Any) -> Dict[str, Any]:
        invoice_id = fields.pop("id", None) or self._next_invoice_id
        self._next_invoice_id = max(self._next_invoice_id, invoice_id) + 1
        row = {"id": invoice_id, "tenant_id": self.tenant_id, "status": "pending", **fields}
        self.invoices[invoice_id] = row
        return row

    async def create_invoice(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.add_invoice(**payload)

    async def fetch_invoice(self, invoice_id: int) -> Optional[Dict[str, Any]]:
        row = self.invoices.get(invoice_id)
        return dict(row) if row else None

    async def update_invoice(self, invoice_id: int, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        row = self.invoices.get(invoice_id)
        if row is None:
            return None
        row.update(changes)
        return dict(row)

    async def fetch_recently_processed(self, since: datetime) -> List[Dict[str, Any]]:
        return [
            dict(row)
            for row in self.invoices.values()
            if row.get("status") in ("reviewing", "error")
            and row.get("processed_at")
            and datetime.fromisoformat(str(row["processed_at"]).replace("Z", "+00:00")) >= since
        ]

    async def replace_invoice_lines(self, invoice_id: int, lines: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        stored = []
        for line in lines:
            stored.append({"id": self._next_line_id, "invoice_id": invoice_id, "tenant_id": self.tenant_id, **line})
            self._next_line_id += 1
        self.lines[invoice_id] = stored
        return [dict(line) for line in stored]

    async def fetch_invoice_lines(self, invoice_id: int) -> List[Dict[str, Any]]:
        return [dict(line) for line in self.lines.get(invoice_id, [])]

    async def fetch_invoice_line(self, invoice_id: int, line_id: int) -> Optional[Dict[str, Any]]:
        for line in self.lines.get(invoice_id, []):
            if line["id"] == line_id:
                return dict(line)
        return None

    async def update_line(self, invoice_id: int, line_id: int, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for line in self.lines.get(invoice_id, []):
            if line["id"] == line_id:
                line.update(changes)
                return dict(line)
        return None

    async def fetch_products(self) -> List[Dict[str, Any]]:
        return [dict(product) for product in self.products if product.get("active", True)]

    async def fetch_match_history(self, supplier_name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            dict(entry)
            for entry in self.history
            if supplier_name is None or entry.get("supplier_name") == supplier_name
        ]

    async def save_match_history(self, **record: Any) -> None:
        self.history.append(dict(record))

    async def record_processing_metrics(self, payload: Dict[str, Any]) -> None:
        self.processing_metrics.append(dict(payload))

    async def record_worker_metric(self, payload: Dict[str, Any]) -> None:
        self.worker_metrics.append(dict(payload))


SAMPLE_INVOICE_TEXT = """DISTRIBUIDORA ALIMENTAR LDA
NIF: 123456789
Fatura: FT2024/001
Data: 15/03/2024
Descrição Qtd Preço Total
AZEITE VIRGEM EXTRA 5L 2 25,00 50,00
ARROZ CAROLINO CX 10KG 3 KG 12,50 37,50
Total s/ IVA: 87,50
Total IVA: 20,13
Total c/ IVA: 107,63
"""

CATALOG = [
    {"id": 1, "name": "Azeite Virgem Extra", "internal_code": "AZ001", "family_id": 3, "subfamily_id": 31, "active": True},
    {"id": 2, "name": "Arroz Carolino", "internal_code": "AR002", "family_id": 4, "subfamily_id": 41, "active": True},
    {"id": 3, "name": "Farinha de Trigo", "internal_code": "FA003", "family_id": 4, "subfamily_id": 42, "active": True},
    {"id": 4, "name": "Azeite Antigo", "internal_code": "AZ999", "family_id": 3, "subfamily_id": 31, "active": False},
]


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="redis_connection")
def redis_connection_fixture():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture(name="queues")
def queues_fixture(redis_connection, clock):
    return create_invoice_queues(redis_connection, prefix="test", clock=clock)


@pytest.fixture(name="sample_text")
def sample_text_fixture() -> str:
    return SAMPLE_INVOICE_TEXT


@pytest.fixture(name="dao")
def dao_fixture() -> FakeInvoiceDAO:
    dao = FakeInvoiceDAO(tenant_id=1)
    dao.products = [dict(product) for product in CATALOG]
    return dao
