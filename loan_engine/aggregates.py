"""
Authoritative Aggregates Module

Readers for the loan aggregate fields (remaining balance, next payment date)
as recomputed by the system of record. The reconciliation engine prefers
these over its own estimate after a payment deletion.
"""

import httpx
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from .amounts import to_decimal
from .dates import parse_optional_date
from .exceptions import ConsistencyError
from .logging_config import get_logger

logger = get_logger("loan_engine.aggregates")


@dataclass
class LoanAggregates:
    """Aggregate fields as reported by the system of record"""
    remaining_balance: Optional[Decimal] = None
    next_payment_date: Optional[date] = None


class AggregateReader(ABC):
    """Source of authoritative loan aggregates"""

    @abstractmethod
    def read(self, loan_id: str) -> LoanAggregates:
        """
        Read the current aggregates of a loan

        Raises:
            ConsistencyError: If the aggregates cannot be read
        """
        pass


class HTTPAggregateReader(AggregateReader):
    """REST reader for a loan aggregate endpoint (GET {base_url}/loans/{id})"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def read(self, loan_id: str) -> LoanAggregates:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.get(f"{self.base_url}/loans/{loan_id}", headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Aggregate read failed for loan {loan_id}: {e}")
            raise ConsistencyError(f"Aggregate read failed for loan {loan_id}: {e}")

        if response.status_code != 200:
            logger.warning(f"Aggregate source returned {response.status_code} for loan {loan_id}")
            raise ConsistencyError(
                f"Aggregate source returned {response.status_code} for loan {loan_id}"
            )

        data = response.json()
        balance = data.get("remaining_balance")
        return LoanAggregates(
            remaining_balance=to_decimal(balance) if balance is not None else None,
            next_payment_date=parse_optional_date(data.get("next_payment_date"))
        )

    def close(self):
        """Close the HTTP client"""
        self._client.close()
