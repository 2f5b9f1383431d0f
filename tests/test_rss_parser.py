from datetime import datetime, timezone

import pytest

from errors import FeedParseError
from rss_parser import parse_rss

RSS_WITH_EXTENSIONS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:content="http://purl.org/rss/1.0/modules/content/"
     xmlns:dc="http://purl.org/dc/elements/1.1/"
     xmlns:sy="http://purl.org/rss/1.0/modules/syndication/"
     xmlns:atom="http://www.w3.org/2005/Atom">
  <channel>
    <title>Example Blog</title>
    <link>https://example.com/</link>
    <description>Posts about things</description>
    <ttl>90</ttl>
    <sy:updatePeriod>daily</sy:updatePeriod>
    <sy:updateFrequency>2</sy:updateFrequency>
    <atom:link rel="hub" href="https://hub.example.com/"/>
    <atom:link rel="self" href="https://example.com/feed.xml"/>
    <image><url>https://example.com/icon.png</url><title>Example</title></image>
    <item>
      <title>First post</title>
      <link>https://example.com/first</link>
      <guid isPermaLink="false"><![CDATA[post-1]]></guid>
      <description>Short teaser</description>
      <content:encoded><![CDATA[<p>Full <b>body</b> text</p>]]></content:encoded>
      <dc:creator>Alice</dc:creator>
      <author>alice@example.com (Alice)</author>
      <pubDate>Sat, 15 Nov 2025 16:00:00 GMT</pubDate>
    </item>
    <item>
      <title>It&#039;s second</title>
      <guid>https://example.com/second</guid>
      <description>&lt;p&gt;Only a description&lt;/p&gt;</description>
      <dc:date>2025-11-16T10:00:00Z</dc:date>
    </item>
  </channel>
</rss>
"""


def test_content_encoded_and_description_kept_separate():
    feed = parse_rss(RSS_WITH_EXTENSIONS)
    first = feed.items[0]

    assert first.content == "<p>Full <b>body</b> text</p>"
    assert first.summary == "Short teaser"


def test_channel_metadata_and_hints():
    feed = parse_rss(RSS_WITH_EXTENSIONS)

    assert feed.title == "Example Blog"
    assert feed.description == "Posts about things"
    assert feed.site_url == "https://example.com/"
    assert feed.icon_url == "https://example.com/icon.png"
    assert feed.hub_url == "https://hub.example.com/"
    assert feed.self_url == "https://example.com/feed.xml"
    assert feed.ttl_minutes == 90
    assert feed.syndication.update_period == "daily"
    assert feed.syndication.update_frequency == 2


def test_item_fields():
    first, second = parse_rss(RSS_WITH_EXTENSIONS).items

    assert first.guid == "post-1"
    assert first.author == "Alice"
    assert first.pub_date == datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)

    assert second.title == "It's second"
    assert second.link == "https://example.com/second"
    assert second.content == "<p>Only a description</p>"
    assert second.content == second.summary
    assert second.pub_date == datetime(2025, 11, 16, 10, 0, tzinfo=timezone.utc)


def test_rss_1_rdf_items_beside_channel():
    rdf = """<?xml version="1.0"?>
    <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#"
             xmlns="http://purl.org/rss/1.0/"
             xmlns:dc="http://purl.org/dc/elements/1.1/">
      <channel rdf:about="https://example.org/">
        <title>RDF Feed</title>
        <link>https://example.org/</link>
      </channel>
      <item rdf:about="https://example.org/a">
        <title>A</title>
        <link>https://example.org/a</link>
        <dc:date>2025-01-02T03:04:05Z</dc:date>
      </item>
      <item rdf:about="https://example.org/b">
        <title>B</title>
        <link>https://example.org/b</link>
      </item>
    </rdf:RDF>
    """
    feed = parse_rss(rdf)

    assert feed.title == "RDF Feed"
    assert [item.guid for item in feed.items] == ["https://example.org/a", "https://example.org/b"]
    assert feed.items[0].pub_date == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_single_item_and_missing_optionals():
    feed = parse_rss("<rss><channel><title>T</title><item><title>Only</title></item></channel></rss>")

    assert len(feed.items) == 1
    item = feed.items[0]
    assert item.title == "Only"
    assert item.guid is None and item.link is None and item.content is None and item.pub_date is None


def test_undeclared_prefixes_still_match():
    feed = parse_rss(
        "<rss><channel><title>T</title><item><title>x</title>"
        "<dc:creator>Bob</dc:creator><content:encoded>Body</content:encoded>"
        "<description>Desc</description></item></channel></rss>"
    )

    assert feed.items[0].author == "Bob"
    assert feed.items[0].content == "Body"


def test_undeclared_atom_prefix_keeps_hub_links():
    feed = parse_rss(
        "<rss><channel><title>T</title><link>https://site/</link>"
        "<atom:link rel='hub' href='https://hub/'/>"
        "<atom:link rel='self' href='https://site/feed'/>"
        "<sy:updatePeriod>hourly</sy:updatePeriod>"
        "</channel></rss>"
    )

    assert feed.hub_url == "https://hub/"
    assert feed.self_url == "https://site/feed"
    assert feed.site_url == "https://site/"
    assert feed.syndication.update_period == "hourly"


def test_default_namespaced_atom_link_does_not_hide_site_link():
    feed = parse_rss(
        "<rss version='2.0'><channel><title>T</title>"
        "<link xmlns='http://www.w3.org/2005/Atom' rel='self' href='https://site/feed'/>"
        "<link>https://site/</link>"
        "<item><title>x</title>"
        "<link xmlns='http://www.w3.org/2005/Atom' rel='replies' href='https://site/c'/>"
        "<link>https://site/post</link></item>"
        "</channel></rss>"
    )

    assert feed.site_url == "https://site/"
    assert feed.self_url == "https://site/feed"
    assert feed.items[0].link == "https://site/post"


@pytest.mark.parametrize("document", [
    "<rss><channel><description>no title</description></channel></rss>",
    "<rss version='2.0'></rss>",
    "<html><body>nope</body></html>",
])
def test_invalid_documents_raise(document):
    with pytest.raises(FeedParseError):
        parse_rss(document)
