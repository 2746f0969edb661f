"""
Tests for the command-line headline printer.
Run with: pytest tests/test_news_client.py -v
"""
import pytest
import json
from unittest.mock import Mock
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from news_client import main, print_article
from newsdesk import (
    DEFAULT_CATEGORIES,
    SCHEMA_GNEWS,
    NewsCache,
    NewsService,
    RawBatch,
    UpstreamError,
)


@pytest.fixture
def service():
    fetcher = Mock()
    fetcher.backend = 'gnews'
    fetcher.fetch_raw.return_value = RawBatch([
        {'title': 'Primeira manchete do dia', 'url': 'https://example.com/1',
         'publishedAt': '2024-01-01T00:00:00Z'},
        {'title': 'Segunda manchete do dia', 'url': 'https://example.com/2',
         'publishedAt': '2024-01-02T00:00:00Z'},
    ], SCHEMA_GNEWS, 2)
    return NewsService(fetcher=fetcher, cache=NewsCache(), categories=DEFAULT_CATEGORIES)


class TestNewsClient:
    """Tests for the CLI entry point."""

    def test_json_output(self, service, capsys):
        assert main(['tech', '--limit', '5', '--json', '--verbose'], service=service) == 0

        body = json.loads(capsys.readouterr().out)
        assert body['category'] == 'tech'
        assert body['total'] == 2
        assert body['data'][0]['title'] == 'Segunda manchete do dia'
        service.fetcher.fetch_raw.assert_called_once_with('tech', 5)

    def test_text_output(self, service, capsys):
        assert main(['home', '--verbose'], service=service) == 0

        out = capsys.readouterr().out
        assert 'Primeira manchete do dia' in out
        assert '2 articles' in out

    def test_error_exit_code(self, service, capsys):
        service.fetcher.fetch_raw.side_effect = UpstreamError('HTTP 500: Server Error', status=500)

        assert main(['world', '--verbose'], service=service) == 1
        assert 'HTTP 500' in capsys.readouterr().err

    def test_print_article(self, capsys):
        print_article({'title': 'Manchete', 'source': 'example.com', 'summary': 'x' * 200}, 1)
        out = capsys.readouterr().out
        assert 'Article #1' in out
        assert 'x' * 150 + '...' in out


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
