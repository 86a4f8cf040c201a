"""
Test suite for the authoritative aggregate reader

Uses httpx.MockTransport in place of the system of record.
"""

import pytest
import httpx
from datetime import date
from decimal import Decimal

from loan_engine.aggregates import HTTPAggregateReader, LoanAggregates
from loan_engine.exceptions import ConsistencyError


def make_reader(handler, api_key=None):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HTTPAggregateReader("http://core.example/api/", api_key=api_key, client=client)


class TestHTTPAggregateReader:
    """Test reading aggregates over HTTP"""

    def test_successful_read(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "id": "LOAN001",
                "remaining_balance": "9500.00",
                "next_payment_date": "2024-03-15"
            })

        reader = make_reader(handler, api_key="secret")
        aggregates = reader.read("LOAN001")

        assert aggregates == LoanAggregates(Decimal('9500.00'), date(2024, 3, 15))
        assert requests[0].url.path == "/api/loans/LOAN001"
        assert requests[0].headers["Authorization"] == "Bearer secret"
        reader.close()

    def test_missing_fields(self):
        reader = make_reader(lambda request: httpx.Response(200, json={"remaining_balance": None}))
        aggregates = reader.read("LOAN001")

        assert aggregates.remaining_balance is None
        assert aggregates.next_payment_date is None

    def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request):
            seen['auth'] = request.headers.get("Authorization")
            return httpx.Response(200, json={})

        make_reader(handler).read("LOAN001")
        assert seen['auth'] is None

    def test_error_status(self):
        reader = make_reader(lambda request: httpx.Response(503))

        with pytest.raises(ConsistencyError):
            reader.read("LOAN001")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("Connection failed")

        with pytest.raises(ConsistencyError):
            make_reader(handler).read("LOAN001")

    def test_bad_date_is_a_value_error(self):
        """Malformed payloads surface as retryable ValueErrors"""
        reader = make_reader(lambda request: httpx.Response(200, json={"next_payment_date": "soon"}))

        with pytest.raises(ValueError):
            reader.read("LOAN001")
