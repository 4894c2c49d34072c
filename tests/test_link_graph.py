from sitemapper.link_graph import LinkGraph


HOME = "https://example.com/"
ABOUT = "https://example.com/about"
BLOG = "https://example.com/blog"


def test_internal_edges_are_counted_once_per_source_target_pair():
    graph = LinkGraph()

    assert graph.add_internal(HOME, ABOUT) is True
    assert graph.add_internal(HOME, ABOUT) is False
    graph.add_internal(BLOG, ABOUT)

    assert graph.out_counts(HOME) == (1, 0)
    assert graph.incoming_count(ABOUT) == 2
    assert graph.incoming_count(BLOG) == 0
    assert len(graph) == 2


def test_external_registry_counts_every_reference():
    graph = LinkGraph()
    graph.add_external(HOME, "https://external.org/")
    graph.add_external(HOME, "https://external.org/")
    graph.add_external(ABOUT, "https://external.org/")

    assert graph.out_counts(HOME) == (0, 1)
    assert graph.external_registry() == {
        "https://external.org/": {
            "occurrences": 3,
            "referring_pages": [HOME, ABOUT],
        }
    }


def test_registry_is_seeded_from_persisted_snapshot():
    graph = LinkGraph(
        {"https://external.org/": {"occurrences": 2, "referring_pages": [HOME]}}
    )
    graph.add_external(BLOG, "https://external.org/")

    entry = graph.external_registry()["https://external.org/"]
    assert entry["occurrences"] == 3
    assert entry["referring_pages"] == [HOME, BLOG]


def test_unknown_pages_have_zero_counts():
    graph = LinkGraph()

    assert graph.out_counts(HOME) == (0, 0)
    assert graph.incoming_count(HOME) == 0
    assert graph.external_registry() == {}
