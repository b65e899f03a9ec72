"""Authenticated caller identity."""

from pydantic import BaseModel


class Principal(BaseModel):
    user_id: str
    tenant_id: str
