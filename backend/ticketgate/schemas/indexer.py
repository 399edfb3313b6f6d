"""Pydantic schemas for the event indexer"""
from typing import Optional

from pydantic import BaseModel


class IndexerStatus(BaseModel):
    running: bool
    last_processed_block: Optional[int] = None
    ledger_endpoint: str
    contract_address: str
