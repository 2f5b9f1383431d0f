import pytest

from errors import FeedParseError, UnknownFeedFormatError
from feed_parser import detect_feed_type, parse_feed

RSS = b"""<?xml version="1.0"?>
<!-- generated -->
<?xml-stylesheet type="text/xsl" href="style.xsl"?>
<rss version="2.0"><channel><title>R</title>
<item><guid>a</guid><title>A</title></item>
</channel></rss>"""

ATOM = "\ufeff" + '<?xml version="1.0"?><feed xmlns="http://www.w3.org/2005/Atom"><title>A</title></feed>'

JSON_FEED = '  {"version": "https://jsonfeed.org/version/1.1", "title": "J", "items": []}'


@pytest.mark.parametrize("content,expected", [
    (RSS, "rss"),
    (ATOM, "atom"),
    (JSON_FEED, "json"),
    ('<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#"></rdf:RDF>', "rss"),
    ('<!DOCTYPE rss PUBLIC "-//Netscape//DTD RSS 0.91//EN" "x.dtd"><rss></rss>', "rss"),
    ("<html><body>Not a feed</body></html>", "unknown"),
    ('{"hello": "world"}', "unknown"),
    ("", "unknown"),
    (b"", "unknown"),
])
def test_detect_feed_type(content, expected):
    assert detect_feed_type(content) == expected


def test_parse_dispatches_by_format():
    assert parse_feed(RSS).title == "R"
    assert parse_feed(ATOM).title == "A"
    assert parse_feed(JSON_FEED).title == "J"


def test_parsing_is_deterministic():
    assert parse_feed(RSS) == parse_feed(RSS)


def test_unknown_format_raises():
    with pytest.raises(UnknownFeedFormatError):
        parse_feed("<html><head><title>x</title></head></html>")


def test_unknown_format_is_a_parse_error():
    with pytest.raises(FeedParseError):
        parse_feed("just some text")
