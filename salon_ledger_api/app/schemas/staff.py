"""Pydantic model for identity directory rows."""

from pydantic import BaseModel, Field


class StaffEntry(BaseModel):
    """One row of the ``staff`` table.

    The same e-mail may appear on several rows (for instance after a
    rename); the caller is allowed in if any of them is enabled.
    """

    id: int
    email: str
    name: str = ""
    enabled: bool = True
    created_at: str = Field("", description="When the operator added the row")
