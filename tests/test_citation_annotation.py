from __future__ import annotations

from newsdash.modules.grounding.citations import annotate, build_annotated_response
from newsdash.modules.grounding.schemas import (
    GroundingChunk,
    GroundingMetadata,
    GroundingSegment,
    GroundingSupport,
)


def _support(end: int | None, indices: list[int], start: int = 0) -> GroundingSupport:
    return GroundingSupport(
        segment=GroundingSegment(start_offset=start, end_offset=end),
        source_indices=indices,
    )


def test_annotate_inserts_from_highest_offset_without_shifting_earlier_ones():
    chunks = [GroundingChunk(source_uri="u0"), GroundingChunk(source_uri="u1")]
    supports = [_support(1, [0]), _support(2, [1])]

    assert annotate("AB", supports, chunks) == "A [1](u0)B [2](u1)"


def test_annotate_result_does_not_depend_on_support_order():
    chunks = [GroundingChunk(source_uri="u0"), GroundingChunk(source_uri="u1")]
    forward = [_support(1, [0]), _support(2, [1])]

    assert annotate("AB", list(reversed(forward)), chunks) == annotate("AB", forward, chunks)


def test_annotate_without_metadata_returns_text_unchanged():
    assert annotate("plain text", None, None) == "plain text"
    assert annotate("plain text", [], [GroundingChunk(source_uri="u0")]) == "plain text"
    assert annotate("plain text", [_support(5, [0])], None) == "plain text"


def test_annotate_joins_multiple_sources_of_one_support():
    chunks = [GroundingChunk(source_uri="u0"), GroundingChunk(source_uri="u1")]

    out = annotate("Rates rose.", [_support(11, [0, 1])], chunks)

    assert out == "Rates rose. [1](u0), [2](u1)"


def test_annotate_drops_sources_without_uri_and_keeps_display_index():
    chunks = [
        GroundingChunk(title="no link"),
        GroundingChunk(source_uri="  "),
        GroundingChunk(source_uri="https://c"),
    ]

    out = annotate("Fact.", [_support(5, [0, 1, 2, 7])], chunks)

    assert out == "Fact. [3](https://c)"


def test_annotate_skips_supports_with_no_usable_links_or_offsets():
    chunks = [GroundingChunk(title="no link")]
    supports = [
        _support(2, [0]),
        _support(None, [0]),
        _support(3, []),
        GroundingSupport(segment=None, source_indices=[0]),
    ]

    assert annotate("Hello", supports, chunks) == "Hello"


def test_annotate_applies_same_offset_supports_one_after_another():
    chunks = [GroundingChunk(source_uri="u0"), GroundingChunk(source_uri="u1")]
    supports = [_support(2, [0]), _support(2, [1])]

    out = annotate("AB", supports, chunks)

    assert out == "AB [2](u1) [1](u0)"
    assert out.count("[1](u0)") == 1
    assert out.count("[2](u1)") == 1


def test_annotate_clamps_offsets_past_the_end_of_text():
    chunks = [GroundingChunk(source_uri="https://x")]

    out = annotate("Emissions rose.", [_support(16, [0])], chunks)

    assert out == "Emissions rose. [1](https://x)"


def test_annotate_byte_offsets_index_utf8_encoding():
    chunks = [GroundingChunk(source_uri="https://cafe")]
    # "café" is 5 bytes in UTF-8
    out = annotate("café ok", [_support(5, [0])], chunks, offset_unit="byte")

    assert out == "café [1](https://cafe) ok"


def test_build_annotated_response_copies_metadata():
    metadata = GroundingMetadata(
        web_search_queries=["climate news today"],
        search_entry_point="<div>chips</div>",
        grounding_chunks=[GroundingChunk(source_uri="https://x", title="x.com")],
        grounding_supports=[_support(5, [0])],
    )

    response = build_annotated_response("Hello world", metadata)

    assert response.text == "Hello world"
    assert response.text_with_citations == "Hello [1](https://x) world"
    assert response.search_queries == ["climate news today"]
    assert response.search_entry_point == "<div>chips</div>"
    assert response.grounding_chunks[0].title == "x.com"
    assert response.error_kind is None


def test_build_annotated_response_without_metadata():
    response = build_annotated_response("Hello", None)

    assert response.text_with_citations == "Hello"
    assert response.grounding_supports == []


def test_annotate_byte_offset_inside_a_character_moves_to_its_start():
    chunks = [GroundingChunk(source_uri="u")]

    inside = annotate("é!", [_support(1, [0])], chunks, offset_unit="byte")
    after = annotate("é!", [_support(2, [0])], chunks, offset_unit="byte")

    assert inside == " [1](u)é!"
    assert after == "é [1](u)!"
    assert "�" not in inside


def test_annotate_byte_offsets_sharing_a_character_stay_outside_each_other():
    chunks = [GroundingChunk(source_uri="u0"), GroundingChunk(source_uri="u1")]
    supports = [_support(1, [0]), _support(1, [1])]

    out = annotate("é!", supports, chunks, offset_unit="byte")

    assert out == " [2](u1) [1](u0)é!"
