from __future__ import annotations

import itertools
import string

import pytest

from qrdrop.chunker import ChunkToken, Incomplete, QrChunker, is_part_text
from qrdrop.errors import MalformedToken

TOKEN = "o|" + (string.ascii_letters * 20)[:998]


def test_split_thousand_characters_into_four_parts() -> None:
    chunker = QrChunker()

    parts = chunker.split(TOKEN, 300)

    assert len(TOKEN) == 1000
    assert [part.total for part in parts] == [4, 4, 4, 4]
    assert [part.index for part in parts] == [0, 1, 2, 3]
    assert [len(part.data) for part in parts] == [300, 300, 300, 100]
    assert len({part.session_id for part in parts}) == 1


def test_ingest_out_of_order() -> None:
    chunker = QrChunker()
    parts = chunker.split(TOKEN, 300)

    results = [chunker.ingest(parts[index]) for index in (2, 0, 3, 1)]

    assert all(isinstance(result, Incomplete) for result in results[:3])
    assert [result.received for result in results[:3]] == [1, 2, 3]
    assert results[2].missing == 1
    assert results[3] == TOKEN
    assert chunker.pending() == {}


def test_every_permutation_with_duplicates_reassembles() -> None:
    parts = QrChunker().split(TOKEN, 300)
    for order in itertools.permutations(range(len(parts))):
        chunker = QrChunker()
        sequence = [order[0], *order]
        outcome = None
        for index in sequence:
            outcome = chunker.ingest(parts[index])
        assert outcome == TOKEN


def test_duplicate_part_does_not_complete_early() -> None:
    chunker = QrChunker()
    parts = chunker.split(TOKEN, 500)

    assert isinstance(chunker.ingest(parts[0]), Incomplete)
    again = chunker.ingest(parts[0])

    assert isinstance(again, Incomplete)
    assert again.received == 1


def test_small_token_is_single_part_and_rendered_plain() -> None:
    chunker = QrChunker()
    assert len(chunker.split("a|short", 300)) == 1
    assert chunker.render("a|short", 300) == ["a|short"]


def test_render_and_feed_wire_form() -> None:
    sender = QrChunker()
    receiver = QrChunker()
    texts = sender.render(TOKEN, 400)

    assert all(is_part_text(text) for text in texts)
    results = [receiver.feed(text) for text in reversed(texts)]

    assert results[-1] == TOKEN


def test_feed_passes_plain_tokens_through() -> None:
    assert QrChunker().feed(TOKEN) == TOKEN


def test_interleaved_sessions_stay_separate() -> None:
    chunker = QrChunker()
    first = chunker.split(TOKEN, 600)
    other_token = "a|" + "z" * 700
    second = chunker.split(other_token, 600)

    assert isinstance(chunker.ingest(first[0]), Incomplete)
    assert isinstance(chunker.ingest(second[1]), Incomplete)
    assert set(chunker.pending()) == {first[0].session_id, second[0].session_id}
    assert chunker.ingest(second[0]) == other_token
    assert chunker.ingest(first[1]) == TOKEN


def test_total_mismatch_rejected() -> None:
    chunker = QrChunker()
    chunker.ingest(ChunkToken("abcd1234", 0, 3, "x"))
    with pytest.raises(MalformedToken):
        chunker.ingest(ChunkToken("abcd1234", 1, 4, "y"))


@pytest.mark.parametrize(
    "text",
    ["p|abc|1", "p||0|2|data", "p|abc|one|2|data", "p|abc|5|2|data", "p|abc|0|0|data"],
)
def test_bad_part_headers(text: str) -> None:
    with pytest.raises(MalformedToken):
        QrChunker().feed(text)


def test_split_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        QrChunker().split(TOKEN, 0)


def test_abandoned_sessions_expire() -> None:
    now = [100.0]
    chunker = QrChunker(abandon_after=30.0, clock=lambda: now[0])
    parts = chunker.split(TOKEN, 300)
    chunker.ingest(parts[0])

    now[0] = 120.0
    assert chunker.expire() == []
    now[0] = 200.0
    assert chunker.expire() == [parts[0].session_id]
    result = chunker.ingest(parts[1])

    assert isinstance(result, Incomplete)
    assert result.received == 1


def test_sessions_kept_without_policy() -> None:
    now = [0.0]
    chunker = QrChunker(clock=lambda: now[0])
    parts = chunker.split(TOKEN, 300)
    chunker.ingest(parts[0])
    now[0] = 10_000.0

    assert chunker.expire() == []
    chunker.reset()
    assert chunker.pending() == {}


def test_late_part_after_reassembly_opens_no_session() -> None:
    chunker = QrChunker()
    parts = chunker.split(TOKEN, 300)
    for part in parts:
        result = chunker.ingest(part)
    assert result == TOKEN

    assert chunker.ingest(parts[1]) == TOKEN
    assert chunker.feed(parts[0].to_text()) == TOKEN
    assert chunker.pending() == {}


def test_completed_history_is_bounded_and_cleared_by_reset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("qrdrop.chunker.COMPLETED_HISTORY", 1)
    chunker = QrChunker()
    first = chunker.split(TOKEN, 600)
    second = chunker.split(TOKEN[::-1], 600)
    for part in first + second:
        chunker.ingest(part)

    assert isinstance(chunker.ingest(first[0]), Incomplete)
    assert chunker.ingest(second[0]) == TOKEN[::-1]
    chunker.reset()
    assert isinstance(chunker.ingest(second[0]), Incomplete)
