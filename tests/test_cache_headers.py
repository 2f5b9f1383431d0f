from cache_headers import CacheControl, effective_max_age, parse_cache_control, parse_cache_headers


def test_parse_cache_control_directives():
    cc = parse_cache_control('Public, Max-Age=600, s-maxage="900", must-revalidate, foo=bar')

    assert cc.public is True
    assert cc.max_age == 600
    assert cc.s_maxage == 900
    assert cc.must_revalidate is True
    assert cc.no_store is False


def test_parse_cache_control_drops_bad_values():
    cc = parse_cache_control("max-age=abc, stale-while-revalidate=30")

    assert cc.max_age is None
    assert cc.stale_while_revalidate == 30


def test_empty_header_yields_defaults():
    assert parse_cache_control(None) == CacheControl()
    assert parse_cache_control("") == CacheControl()


def test_effective_max_age_prefers_s_maxage():
    assert effective_max_age(parse_cache_control("max-age=60, s-maxage=120")) == 120
    assert effective_max_age(parse_cache_control("max-age=60")) == 60


def test_no_store_voids_max_age():
    assert effective_max_age(parse_cache_control("no-store, max-age=60, s-maxage=120")) is None
    assert effective_max_age(None) is None
    assert effective_max_age(parse_cache_control("public")) is None


def test_parse_cache_headers_from_mapping():
    headers = parse_cache_headers({
        "ETag": '"abc"',
        "Last-Modified": "Wed, 21 Oct 2015 07:28:00 GMT",
        "Cache-Control": "max-age=300",
    })

    assert headers.etag == '"abc"'
    assert headers.last_modified == "Wed, 21 Oct 2015 07:28:00 GMT"
    assert headers.cache_control.max_age == 300
    assert headers.raw_cache_control == "max-age=300"
