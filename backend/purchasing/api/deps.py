"""Hardline Purchasing — FastAPI dependencies (DB session, directory, request headers)."""
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from purchasing.db.session import get_db
from purchasing.services.directory_service import HttpDirectory, StaticDirectory, get_directory

DbSession = Annotated[AsyncSession, Depends(get_db)]
Directory = Annotated[StaticDirectory | HttpDirectory, Depends(get_directory)]

# Optional caller identity recorded on audit entries. No authentication is done here.
Actor = Annotated[str | None, Header(alias="X-Actor", max_length=255)]

# Header alternative to the body's idempotency_key on receive/payments/refunds.
IdempotencyKey = Annotated[str | None, Header(alias="Idempotency-Key", max_length=255)]
