from sitemapper.parsing.content_extractor import (
    CONTENT_SCHEMA_VERSION,
    build_content_record,
    extract_clean_text,
    extract_headings,
    extract_json_ld,
    extract_seo,
)


PAGE = """
<html>
<head>
  <title>Widgets</title>
  <meta name="description" content="All about widgets">
  <meta name="robots" content="index,follow">
  <meta property="og:title" content="Widgets OG">
  <meta property="og:image" content="https://example.com/w.png">
  <link rel="canonical" href="https://example.com/widgets">
  <script type="application/ld+json">{"@type": "Organization", "name": "Acme"}</script>
  <script type="application/ld+json">{not valid json</script>
  <script type="application/ld+json">[{"@type": "BreadcrumbList"}, {"@type": "WebPage"}]</script>
  <style>.x { color: red }</style>
</head>
<body>
  <h2>Intro</h2>
  <h1>Widgets</h1>
  <p>Great   widgets
     for everyone.</p>
  <script>var tracking = 1;</script>
  <iframe src="https://video.example.com"></iframe>
  <h3>Details</h3>
  <h2>More</h2>
</body>
</html>
"""


def test_extract_clean_text_strips_non_content_and_collapses_whitespace():
    text = extract_clean_text(PAGE)

    assert "Great widgets for everyone." in text
    assert "tracking" not in text
    assert "color" not in text
    assert "  " not in text


def test_extract_headings_preserves_document_order_per_level():
    assert extract_headings(PAGE) == {
        "h1": ["Widgets"],
        "h2": ["Intro", "More"],
        "h3": ["Details"],
    }


def test_extract_seo_leaves_missing_fields_null():
    seo = extract_seo(PAGE)

    assert seo["title"] == "Widgets"
    assert seo["meta_description"] == "All about widgets"
    assert seo["canonical_url"] == "https://example.com/widgets"
    assert seo["robots"] == "index,follow"
    assert seo["og"] == {
        "title": "Widgets OG",
        "description": None,
        "image": "https://example.com/w.png",
    }
    assert list(seo["og"]) == ["title", "description", "image"]


def test_extract_json_ld_skips_only_the_malformed_block():
    blocks = extract_json_ld(PAGE, "https://example.com/widgets")

    assert blocks == [
        {"@type": "Organization", "name": "Acme"},
        {"@type": "BreadcrumbList"},
        {"@type": "WebPage"},
    ]


def test_build_content_record():
    record = build_content_record(
        PAGE,
        crawl_job_id="job-1",
        normalized_url="https://example.com/widgets",
    )

    assert record["crawl_job_id"] == "job-1"
    assert record["normalized_url"] == "https://example.com/widgets"
    assert record["content_schema_version"] == CONTENT_SCHEMA_VERSION
    assert record["schema"]["json_ld"][0]["name"] == "Acme"
    assert record["raw_html"] == PAGE
    assert record["fetched_at"].tzinfo is not None

    without_html = build_content_record(
        PAGE,
        crawl_job_id="job-1",
        normalized_url="https://example.com/widgets",
        include_raw_html=False,
    )
    assert without_html["raw_html"] is None
