"""
Document storage boundary

Supporting documents (receipts, invoices) live in an external store. The
ledger only keeps the opaque reference the store hands back.
"""

import re
from typing import Protocol

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class DocumentStorage(Protocol):
    """External document store"""

    def store(self, content: bytes, path: str) -> str:
        """Save `content` under `path` and return a reference (usually a URL)"""
        ...

    def delete(self, path: str) -> None:
        ...


def safe_segment(value: str) -> str:
    """Replace characters that are unsafe in a storage path with underscores"""
    cleaned = _UNSAFE.sub("_", value.strip()).strip("._")
    return cleaned or "_"


def expense_document_path(project_id: str, line_id: str, expense_id: str, filename: str) -> str:
    """
    Canonical storage path for an expense's supporting document

    >>> expense_document_path("prj-1", "lin-2", "exp-3", "factura 001.pdf")
    'obras/prj-1/partida_lin-2/gasto_exp-3/factura_001.pdf'
    """
    return "/".join(
        (
            "obras",
            safe_segment(project_id),
            f"partida_{safe_segment(line_id)}",
            f"gasto_{safe_segment(expense_id)}",
            safe_segment(filename),
        )
    )
