import content_cleaner
from content_cleaner import (
    CleanupRule, apply_cleanup_rules, extract_main_content, host_matches,
    register_cleanup_rule, rewrite_relative_urls, strip_html, strip_published_on_prefix,
    truncate_text,
)


def test_relative_urls_resolved_against_entry_url():
    html = '<p><a href="details.html">Read more</a><img src="../img/photo.png" alt="Photo"/></p>'
    rewritten = rewrite_relative_urls(html, "https://example.com/articles/2025/post.html")

    assert 'href="https://example.com/articles/2025/details.html"' in rewritten
    assert 'src="https://example.com/articles/img/photo.png"' in rewritten


def test_absolute_and_special_urls_left_alone():
    html = (
        '<p><a href="https://other.example.org/x">abs</a> <a href="#top">top</a> '
        '<a href="mailto:a@example.com">mail</a> <img src="data:image/png;base64,AAAA"/></p>'
    )

    assert rewrite_relative_urls(html, "https://example.com/post") == html


def test_relative_urls_without_base_unchanged():
    html = '<a href="details.html">Read more</a>'
    assert rewrite_relative_urls(html, None) == html


def test_strip_published_on_prefix():
    content = "<p>Published on November 15, 2025 4:00 PM GMT<br/><br/>Actual text</p>"
    assert strip_published_on_prefix(content) == "<p>Actual text</p>"

    content = "<p>Published on March 1, 2025</p><p>Body</p>"
    assert strip_published_on_prefix(content) == "<p>Body</p>"

    assert strip_published_on_prefix("<p>Body only</p>") == "<p>Body only</p>"


def test_cleanup_rules_only_apply_to_matching_feeds():
    content = "<p>Published on March 1, 2025</p><p>Body</p>"

    assert apply_cleanup_rules(content, "https://www.lesswrong.com/feed.xml") == "<p>Body</p>"
    assert apply_cleanup_rules(content, "https://example.com/feed.xml") == content


def test_custom_rule_registry():
    rule = CleanupRule(name="shout", predicate=host_matches("example.com"), transform=str.upper)

    assert apply_cleanup_rules("quiet", "https://blog.example.com/rss", rules=[rule]) == "QUIET"
    assert apply_cleanup_rules("quiet", "https://notexample.com/rss", rules=[rule]) == "quiet"


def test_registered_rule_applies_by_default(monkeypatch):
    monkeypatch.setattr(content_cleaner, "CLEANUP_RULES", list(content_cleaner.CLEANUP_RULES))
    register_cleanup_rule(CleanupRule(
        name="strip-ads", predicate=host_matches("ads.example.com"),
        transform=lambda content: content.replace("<aside>ad</aside>", ""),
    ))

    assert apply_cleanup_rules("<p>x</p><aside>ad</aside>", "https://ads.example.com/feed") == "<p>x</p>"
    assert len(content_cleaner.CLEANUP_RULES) == 2


def test_strip_html_collapses_whitespace():
    assert strip_html("<p>Hello\n\n  <b>world</b></p><p>again</p>") == "Hello world again"
    assert strip_html("Fish &amp; chips") == "Fish & chips"
    assert strip_html(None) == ""


def test_truncate_text_prefers_word_boundary():
    text = ("word " * 100).strip()
    truncated = truncate_text(text)

    assert truncated.endswith("...")
    assert len(truncated) <= 303
    assert not truncated[:-3].endswith(" ")
    assert truncated[:-3].split(" ")[-1] == "word"


def test_truncate_text_hard_cut_without_nearby_space():
    text = "x" * 400
    assert truncate_text(text) == "x" * 300 + "..."
    assert truncate_text("short") == "short"


def test_extract_main_content_skips_short_input():
    assert extract_main_content("<p>tiny</p>") is None


def test_extract_main_content_finds_article():
    paragraph = "This is a substantial paragraph of article text that readability should keep. " * 5
    html = (
        "<html><body><div class='nav'><a href='/'>Home</a></div>"
        f"<article><p>{paragraph}</p><p>{paragraph}</p></article>"
        "<div class='footer'>Copyright</div></body></html>"
    )

    extracted = extract_main_content(html, "https://example.com/post")

    assert extracted is not None
    assert "substantial paragraph" in extracted
