from __future__ import annotations

from editcrew.orchestration.budget import (
    TIER_FULL,
    TIER_HEAD,
    TIER_PASSTHROUGH,
    TIER_SMART,
    TIER_STUB,
    allocate_text,
    budget_files,
    estimate_tokens,
    head_truncate,
    smart_truncate,
)
from editcrew.orchestration.types import FileContext


def _file(file_id: str, content: str) -> FileContext:
    return FileContext(file_id=file_id, file_name=f"{file_id}.liquid", file_type="liquid", content=content)


def _lines(count: int, width: int) -> str:
    return "\n".join("x" * (width - 1) for _ in range(count))


def test_estimate_tokens_uses_chars_per_token_heuristic():
    assert estimate_tokens("") == 1
    assert estimate_tokens("a" * 350) == 100


def test_small_large_huge_files_become_full_smart_stub():
    small = _file("small", "a" * 350)
    medium = _file("medium", _lines(500, 35))
    huge = _file("huge", _lines(100, 1750))
    assert estimate_tokens(small.content) == 100
    assert 4900 < estimate_tokens(medium.content) <= 5000
    assert 49_000 < estimate_tokens(huge.content) <= 50_000

    result = budget_files([small, medium, huge], 4000)

    assert len(result.files) == 3
    assert [item.file_id for item in result.files] == ["small", "medium", "huge"]
    assert result.files[0].content == small.content
    assert result.tiers == {"small": TIER_FULL, "medium": TIER_SMART, "huge": TIER_STUB}
    assert "lines truncated ..." in result.files[1].content
    assert result.files[1].content.startswith("x" * 34)
    assert result.files[1].content.endswith("x" * 34)
    assert result.files[2].content == f"[{len(huge.content)} chars — over budget]"
    assert result.files[2].is_stub
    assert result.used_tokens <= 4000
    assert result.truncated


def test_head_only_when_tail_does_not_fit():
    content = _lines(200, 100)
    smart = smart_truncate(content)
    head = head_truncate(content)
    assert smart is not None and head is not None
    ceiling = estimate_tokens(head) + 10
    assert estimate_tokens(smart) > ceiling

    result = budget_files([_file("page", content)], ceiling)

    assert result.tiers["page"] == TIER_HEAD
    assert "(head only)" in result.files[0].content


def test_budgeting_its_own_output_is_a_no_op():
    files = [_file("a", "a" * 350), _file("b", _lines(500, 35)), _file("c", _lines(100, 1750))]
    first = budget_files(files, 4000)
    second = budget_files(first.files, 4000)

    assert [item.content for item in second.files] == [item.content for item in first.files]
    assert second.tiers["c"] == TIER_PASSTHROUGH


def test_stub_input_passes_through_uncharged():
    stub = _file("stub", "[file not loaded]")
    result = budget_files([stub, _file("tiny", "hello")], 10)

    assert result.files[0].content == "[file not loaded]"
    assert result.tiers["stub"] == TIER_PASSTHROUGH
    assert result.used_tokens == estimate_tokens("hello")


def test_priority_files_are_admitted_before_smaller_ones():
    big = _file("big", "b" * 3500)
    small = _file("small", "s" * 350)

    result = budget_files([small, big], 1000, priority_ids={"big"})

    assert result.tiers["big"] == TIER_FULL
    assert result.tiers["small"] == TIER_STUB
    assert [item.file_id for item in result.files] == ["small", "big"]


def test_allocate_text_trims_to_remaining_budget():
    text, tokens = allocate_text("word " * 1000, 100, label="Memory")
    assert "[Memory truncated to fit budget]" in text
    assert tokens <= 100
    assert allocate_text("anything", 0) == ("", 0)
