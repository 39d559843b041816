"""
Tests for final-segment stitching and speaker splitting.
"""

import pytest

from callassist.asr.accumulator import (
    ChannelAccumulator,
    majority_speaker,
    merge_final_segment,
    parse_words,
    split_speaker_turns,
    text_from_words,
)
from callassist.asr.base import Word


@pytest.mark.parametrize(
    "buffer, segment, expected",
    [
        ("", "hello", "hello"),
        ("hello", "", "hello"),
        ("hello", "hello there", "hello there"),
        ("hello there", "there", "hello there"),
        ("hello there", "hello there", "hello there"),
        ("hello", "world", "hello world"),
        ("hello ", "world", "hello world"),
        ("hello", "  world  ", "hello world"),
    ],
)
def test_merge_final_segment(buffer, segment, expected):
    assert merge_final_segment(buffer, segment) == expected


def test_text_from_words_prefers_punctuated_and_tightens_punctuation():
    words = [Word("hi"), Word("there", punctuated_word="there,"), Word("bob"), Word("?", punctuated_word="?")]
    assert text_from_words(words) == "hi there, bob?"


def test_split_speaker_turns_preserves_order():
    words = [
        Word("a", start=0.0, end=0.1, speaker=0),
        Word("b", start=0.1, end=0.2, speaker=0),
        Word("c", start=0.2, end=0.3, speaker=1),
        Word("d", start=0.3, end=0.4, speaker=1),
        Word("e", start=0.4, end=0.5, speaker=0),
    ]
    turns = split_speaker_turns(words)
    assert [s for s, _ in turns] == [0, 1, 0]
    assert [text_from_words(run) for _, run in turns] == ["a b", "c d", "e"]


def test_untagged_word_inherits_previous_speaker():
    words = [Word("a", speaker=1), Word("b"), Word("c", speaker=2)]
    turns = split_speaker_turns(words)
    assert [(s, len(run)) for s, run in turns] == [(1, 2), (2, 1)]


def test_leading_untagged_words_have_no_speaker():
    turns = split_speaker_turns([Word("um"), Word("yes", speaker=0)])
    assert [s for s, _ in turns] == [None, 0]


def test_majority_speaker_tie_goes_to_first_seen():
    words = [Word("a", speaker=3), Word("b", speaker=1), Word("c", speaker=1), Word("d", speaker=3)]
    assert majority_speaker(words) == 3
    assert majority_speaker([Word("a")]) is None


def test_finalize_uses_word_times_and_resets():
    acc = ChannelAccumulator()
    acc.add_final("hello", parse_words([{"word": "hello", "start": 0.5, "end": 0.9}]))
    acc.add_final("hello there", parse_words([{"word": "there", "start": 1.0, "end": 1.25}]))

    [utt] = acc.finalize(1, diarize=False)
    assert utt.text == "hello there"
    assert (utt.channel_index, utt.start_ms, utt.end_ms, utt.speaker_id) == (1, 500, 1250, None)
    assert acc.final_text == "" and acc.words == [] and acc.last_caption == ""
    assert acc.finalize(1, diarize=False) == []


def test_finalize_end_override_applies_even_when_none():
    acc = ChannelAccumulator()
    acc.add_final("ok", parse_words([{"word": "ok", "start": 0.0, "end": 0.3}]))
    [utt] = acc.finalize(0, diarize=False, end_ms_override=None)
    assert utt.end_ms is None
    assert utt.start_ms == 0


def test_finalize_diarized_splits_by_speaker():
    acc = ChannelAccumulator()
    acc.add_final(
        "so what is the price it is ten",
        [
            Word("so", start=0.0, end=0.2, speaker=0),
            Word("what", start=0.2, end=0.4, speaker=1),
            Word("price?", start=0.4, end=0.8, speaker=1),
            Word("ten.", start=1.0, end=1.3, speaker=0),
        ],
    )
    utterances = acc.finalize(0, diarize=True)
    assert [(u.speaker_id, u.text) for u in utterances] == [(0, "so"), (1, "what price?"), (0, "ten.")]
    assert (utterances[1].start_ms, utterances[1].end_ms) == (200, 800)


def test_finalize_diarized_without_tags_keeps_single_utterance():
    acc = ChannelAccumulator()
    acc.add_final("hello", [Word("hello", start=0.0, end=0.4)])
    [utt] = acc.finalize(0, diarize=True)
    assert utt.text == "hello"
    assert utt.speaker_id is None


def test_accept_caption_dedupes_and_skips_empty():
    acc = ChannelAccumulator()
    assert acc.accept_caption("hel") == "hel"
    assert acc.accept_caption(" hel ") is None
    assert acc.accept_caption("") is None
    assert acc.accept_caption("hello") == "hello"


def test_parse_words_skips_garbage():
    words = parse_words([{"word": "a", "speaker": True, "start": "x"}, "nope", 3, {"word": "b", "speaker": 2}])
    assert [(w.word, w.speaker, w.start) for w in words] == [("a", None, None), ("b", 2, None)]
    assert parse_words(None) == []
