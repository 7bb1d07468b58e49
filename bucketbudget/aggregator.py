"""Client for the bank-aggregation API (Akahu personal-app style).

Authentication uses a user token as a bearer token plus an app token in
the ``X-Akahu-Id`` header.  Responses wrap results in ``items``; this
module converts them to the dataclasses in :mod:`bucketbudget.models`
so the sync code never touches raw JSON.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from . import config, db
from .errors import ConfigurationError, UpstreamError
from .models import AggregatorAccount, AggregatorPendingTransaction, AggregatorTransaction

logger = logging.getLogger(__name__)


def _nested(payload: Dict[str, Any], key: str, field: str) -> Any:
    value = payload.get(key)
    return value.get(field) if isinstance(value, dict) else None


def parse_account(item: Dict[str, Any]) -> AggregatorAccount:
    return AggregatorAccount(
        external_id=item['_id'],
        name=item.get('name') or item['_id'],
        institution=_nested(item, 'connection', 'name'),
        account_type=item.get('type'),
        balance_current=db.parse_amount(_nested(item, 'balance', 'current')),
        balance_available=db.parse_amount(_nested(item, 'balance', 'available')),
        currency=_nested(item, 'balance', 'currency') or 'NZD',
        status=item.get('status'),
        logo=_nested(item, 'connection', 'logo'),
    )


def parse_transaction(item: Dict[str, Any]) -> AggregatorTransaction:
    return AggregatorTransaction(
        external_id=item['_id'],
        external_account_id=item['_account'],
        date=db.parse_date(item['date']),
        description=item.get('description') or '',
        amount=db.parse_amount(item['amount']),
        merchant=_nested(item, 'merchant', 'name'),
        category=_nested(item, 'category', 'name'),
        balance=db.parse_amount(item.get('balance')),
        transaction_type=item.get('type'),
    )


def parse_pending(item: Dict[str, Any]) -> AggregatorPendingTransaction:
    return AggregatorPendingTransaction(
        external_account_id=item['_account'],
        date=db.parse_date(item['date']),
        description=item.get('description') or '',
        amount=db.parse_amount(item['amount']),
        transaction_type=item.get('type'),
        updated_at=item.get('updated_at'),
    )


class AggregatorClient:
    """Thin synchronous wrapper around the aggregator's REST API.

    ``http_client`` may be supplied (for example one built on
    ``httpx.MockTransport``); otherwise one is created from configuration.
    """

    def __init__(
        self,
        app_token: Optional[str] = None,
        user_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        app_token = app_token if app_token is not None else config.AGGREGATOR_APP_TOKEN
        user_token = user_token if user_token is not None else config.AGGREGATOR_USER_TOKEN
        if not app_token or not user_token:
            raise ConfigurationError(
                "Missing AGGREGATOR_APP_TOKEN or AGGREGATOR_USER_TOKEN environment variables"
            )
        self._client = http_client or httpx.Client(
            base_url=base_url or config.AGGREGATOR_BASE_URL,
            timeout=timeout if timeout is not None else config.AGGREGATOR_TIMEOUT_SECONDS,
        )
        self._headers = {
            'Authorization': f'Bearer {user_token}',
            'X-Akahu-Id': app_token,
            'Content-Type': 'application/json',
        }

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> 'AggregatorClient':
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, params=params, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("Aggregator %s %s failed with %s", method, path, status)
            raise UpstreamError(
                f"Aggregator API error ({status}): {e.response.text}", status_code=status
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Aggregator %s %s failed: %s", method, path, e)
            raise UpstreamError(f"Aggregator request failed: {e}") from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Aggregator returned invalid JSON for {path}") from e

    def _items(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        return self._request('GET', path, params=params).get('items') or []

    def list_accounts(self) -> List[AggregatorAccount]:
        return [parse_account(item) for item in self._items('/accounts')]

    def list_transactions(self, external_account_id: str, start: Optional[date] = None,
                          end: Optional[date] = None) -> List[AggregatorTransaction]:
        params = {}
        if start is not None:
            params['start'] = start.isoformat()
        if end is not None:
            params['end'] = end.isoformat()
        items = self._items(f'/accounts/{external_account_id}/transactions', params=params or None)
        return [parse_transaction(item) for item in items]

    def list_pending_transactions(self) -> List[AggregatorPendingTransaction]:
        """Pending transactions across every connected account; they carry no stable id."""
        return [parse_pending(item) for item in self._items('/transactions/pending')]

    def trigger_refresh(self, external_account_id: str) -> None:
        """Ask the aggregator to fetch fresh data from the bank; subject to its rate limits."""
        self._request('POST', f'/refresh/{external_account_id}')
