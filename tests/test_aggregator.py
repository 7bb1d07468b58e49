from datetime import date

import httpx
import pytest

from bucketbudget.aggregator import AggregatorClient
from bucketbudget.errors import ConfigurationError, UpstreamError

BASE_URL = "https://api.example.test/v1"


def _client(handler):
    http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return AggregatorClient(app_token="app-token", user_token="user-token", http_client=http_client)


def test_missing_tokens_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        AggregatorClient(app_token="", user_token="")


def test_list_accounts_sends_auth_headers_and_parses_items():
    seen = {}

    def handler(request):
        seen['auth'] = request.headers['Authorization']
        seen['app'] = request.headers['X-Akahu-Id']
        seen['path'] = request.url.path
        return httpx.Response(200, json={'success': True, 'items': [{
            '_id': 'acc_123',
            'name': 'Everyday',
            'type': 'CHECKING',
            'status': 'ACTIVE',
            'balance': {'current': 1200.5, 'available': 1100, 'currency': 'NZD'},
            'connection': {'_id': 'conn_1', 'name': 'ANZ', 'logo': 'https://logo'},
        }]})

    [account] = _client(handler).list_accounts()

    assert seen == {'auth': 'Bearer user-token', 'app': 'app-token', 'path': '/v1/accounts'}
    assert account.external_id == 'acc_123'
    assert account.institution == 'ANZ'
    assert account.balance_current == 1200.5
    assert account.balance_available == 1100.0
    assert account.logo == 'https://logo'


def test_list_transactions_passes_start_and_parses_optional_fields():
    def handler(request):
        assert request.url.path == '/v1/accounts/acc_123/transactions'
        assert request.url.params['start'] == '2025-01-01'
        return httpx.Response(200, json={'items': [
            {
                '_id': 'trans_1', '_account': 'acc_123', 'date': '2025-01-03T11:00:00.000Z',
                'description': 'COUNTDOWN EASTGATE', 'amount': -42.1, 'balance': 900,
                'type': 'EFTPOS', 'merchant': {'_id': 'm1', 'name': 'Countdown'},
                'category': {'_id': 'c1', 'name': 'Supermarkets'},
            },
            {
                '_id': 'trans_2', '_account': 'acc_123', 'date': '2025-01-04T00:00:00.000Z',
                'description': 'TRANSFER', 'amount': 100, 'type': 'TRANSFER',
            },
        ]})

    first, second = _client(handler).list_transactions('acc_123', start=date(2025, 1, 1))

    assert first.date == date(2025, 1, 3)
    assert first.merchant == 'Countdown'
    assert first.category == 'Supermarkets'
    assert second.merchant is None
    assert second.balance is None


def test_list_pending_transactions():
    def handler(request):
        assert request.url.path == '/v1/transactions/pending'
        return httpx.Response(200, json={'items': [{
            '_account': 'acc_123', 'date': '2025-01-05T00:00:00Z', 'description': 'Z ENERGY',
            'amount': -80, 'type': 'EFTPOS', 'updated_at': '2025-01-05T01:00:00Z',
        }]})

    [pending] = _client(handler).list_pending_transactions()

    assert pending.external_account_id == 'acc_123'
    assert pending.amount == -80.0
    assert pending.updated_at == '2025-01-05T01:00:00Z'


def test_trigger_refresh_posts():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        return httpx.Response(200, json={'success': True})

    _client(handler).trigger_refresh('acc_123')

    assert calls == [('POST', '/v1/refresh/acc_123')]


def test_http_errors_become_upstream_errors():
    def handler(request):
        return httpx.Response(429, text='Too many requests')

    with pytest.raises(UpstreamError) as excinfo:
        _client(handler).trigger_refresh('acc_123')

    assert excinfo.value.status_code == 429
    assert '429' in str(excinfo.value)


def test_transport_errors_become_upstream_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError) as excinfo:
        _client(handler).list_accounts()

    assert excinfo.value.status_code is None
