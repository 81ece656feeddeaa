"""
Command validation shared by the domain handlers

Commands are pydantic models that accept loose caller input. Building one
turns pydantic's ValidationError into the ledger's InvalidInput, so callers
only ever see LedgerError subclasses.
"""

from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from public_works_ledger.kernel.errors import InvalidInput

C = TypeVar("C", bound=BaseModel)


def build_command(model: type[C], data: Any) -> C:
    """
    Validate loose input into a command model

    Raises:
        InvalidInput: Naming the first field that failed validation
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or "input"
        raise InvalidInput(field, error.get("msg", "invalid value")) from None
