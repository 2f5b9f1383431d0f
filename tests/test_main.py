import pytest

from config import Config, config
from main import IngestOrchestrator, build_parser, print_status


def test_build_parser_commands():
    parser = build_parser()

    args = parser.parse_args(['--db', 'x.db', 'add', 'https://example.com/feed', '--slug', 'ex', '--readability'])
    assert (args.db, args.command, args.url, args.slug, args.readability) == ('x.db', 'add', 'https://example.com/feed', 'ex', True)

    args = parser.parse_args(['once', '--feed', 'ex'])
    assert (args.command, args.feed) == ('once', 'ex')

    with pytest.raises(SystemExit):
        parser.parse_args([])


@pytest.mark.asyncio
async def test_orchestrator_seeds_and_reports(monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(config, 'FEED_SOURCES', {'seeded': 'https://seed.example.com/feed.xml'})
    orchestrator = IngestOrchestrator(str(tmp_path / "main.db"))
    await orchestrator.start()
    try:
        feed_id = await orchestrator.add_feed('https://example.com/feed.xml', slug='added')

        assert await orchestrator.resolve_feed('added') == feed_id
        assert await orchestrator.resolve_feed(str(feed_id)) == feed_id
        assert await orchestrator.resolve_feed('missing') is None
        assert await orchestrator.run_once('missing') == []

        feeds = await orchestrator.status()
        assert [feed['slug'] for feed in feeds] == ['seeded', 'added']

        print_status(feeds)
        output = capsys.readouterr().out
        assert "[1] seeded" in output
        assert "websub: none" in output
    finally:
        await orchestrator.stop()


def test_follow_permanent_redirects_setting(monkeypatch):
    monkeypatch.setenv('FOLLOW_PERMANENT_REDIRECTS', 'false')
    assert Config().fetcher_settings().follow_permanent_redirects is False

    monkeypatch.delenv('FOLLOW_PERMANENT_REDIRECTS')
    settings = Config().fetcher_settings()
    assert settings.follow_permanent_redirects is True
