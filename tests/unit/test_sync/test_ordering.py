"""Tests for message ordering.

Merging is idempotent, independent of arrival order, orders messages a
full second apart by time and messages closer than that by id.
"""

from itertools import permutations

from helpdesk_sync.sync.ordering import (
    canonical_order, merge_message, merge_messages, replace_message
)
from tests.fakes import at, make_message


def ids(sequence):
    return [m.id for m in sequence]


def merge_all(messages):
    sequence = []
    for message in messages:
        sequence = merge_message(sequence, message, now=at(10_000))
    return sequence


# =========================================================================
# Merge laws
# =========================================================================


def test_merge_is_idempotent():
    m = make_message("m1", created_at=at(0))
    once = merge_message([], m)
    twice = merge_message(once, m)
    assert ids(once) == ids(twice) == ["m1"]


def test_merge_skips_duplicate_id_even_with_different_payload():
    original = make_message("m1", created_at=at(0), content="<p>first</p>")
    duplicate = make_message("m1", created_at=at(50), content="<p>second</p>")
    merged = merge_message([original], duplicate)
    assert len(merged) == 1
    assert merged[0].body_html == "<p>first</p>"


def test_merge_does_not_mutate_existing():
    existing = [make_message("m2", created_at=at(5))]
    merge_message(existing, make_message("m1", created_at=at(0)))
    assert ids(existing) == ["m2"]


def test_any_arrival_order_gives_same_sequence():
    messages = [
        make_message("a", created_at=at(0)),
        make_message("b", created_at=at(0.4)),
        make_message("c", created_at=at(0.9)),
        make_message("d", created_at=at(1.2)),
        make_message("e", created_at=at(5)),
    ]
    results = {tuple(ids(merge_all(order))) for order in permutations(messages)}
    assert len(results) == 1


def test_timestamps_a_second_apart_order_by_time():
    early = make_message("z-early", created_at=at(0))
    late = make_message("a-late", created_at=at(1))
    assert ids(merge_all([late, early])) == ["z-early", "a-late"]
    assert ids(merge_all([early, late])) == ["z-early", "a-late"]


def test_timestamps_within_a_second_order_by_id():
    first = make_message("m-b", created_at=at(0))
    second = make_message("m-a", created_at=at(0.6))
    assert ids(merge_all([first, second])) == ["m-a", "m-b"]


def test_burst_within_tolerance_orders_by_id():
    # created T+0, T+0.3, T+0.2 arriving as m2, m3, m1: all within one
    # second, so the id tie-break wins over the sub-second timestamps
    # (DESIGN.md, "Message ordering and the burst scenario")
    m1 = make_message("m1", created_at=at(0))
    m2 = make_message("m2", created_at=at(0.3))
    m3 = make_message("m3", created_at=at(0.2))
    assert ids(merge_all([m2, m3, m1])) == ["m1", "m2", "m3"]


def test_windows_are_anchored_at_their_first_message():
    # c is within a second of b but not of a, so it opens a new window
    a = make_message("c-first", created_at=at(0))
    b = make_message("b-second", created_at=at(0.7))
    c = make_message("a-third", created_at=at(1.4))
    assert ids(canonical_order([c, b, a])) == ["b-second", "c-first", "a-third"]


# =========================================================================
# Timestamp precedence
# =========================================================================


def test_created_preferred_over_sent_and_received():
    m = make_message("m1", created_at=at(10), sent_at=at(0).isoformat(), received_at=at(0).isoformat())
    other = make_message("m2", created_at=at(5))
    assert ids(merge_all([m, other])) == ["m2", "m1"]


def test_sent_used_when_created_missing():
    m = make_message("m1", sent_at=at(10).isoformat(), received_at=at(0).isoformat())
    other = make_message("m2", created_at=at(5))
    assert ids(merge_all([m, other])) == ["m2", "m1"]


def test_received_used_when_created_and_sent_missing():
    m = make_message("m1", received_at=at(10).isoformat())
    other = make_message("m2", created_at=at(5))
    assert ids(merge_all([m, other])) == ["m2", "m1"]


def test_untimestamped_message_is_stamped_once():
    m = make_message("m1")
    merged = merge_message([], m, now=at(100))
    assert merged[0].created_at == at(100)
    remerged = merge_message(merged, make_message("m0", created_at=at(200)), now=at(300))
    assert ids(remerged) == ["m1", "m0"]
    assert remerged[0].created_at == at(100)


def test_merge_messages_folds_a_fetched_list():
    fetched = [make_message(f"m{i}", created_at=at(i * 2)) for i in (3, 1, 2)]
    assert ids(merge_messages([], fetched)) == ["m1", "m2", "m3"]


# =========================================================================
# Replace by id
# =========================================================================


def test_replace_swaps_payload_and_reorders():
    sequence = merge_all([make_message("m1", created_at=at(0)), make_message("m2", created_at=at(5))])
    edited = make_message("m1", created_at=at(10), content="<p>edited</p>")
    replaced = replace_message(sequence, edited)
    assert ids(replaced) == ["m2", "m1"]
    assert replaced[1].body_html == "<p>edited</p>"


def test_replace_keeps_timestamps_when_update_has_none():
    sequence = merge_all([make_message("m1", created_at=at(0)), make_message("m2", created_at=at(5))])
    edited = make_message("m1", content="<p>edited</p>")
    replaced = replace_message(sequence, edited, now=at(999))
    assert ids(replaced) == ["m1", "m2"]
    assert replaced[0].created_at == at(0)


def test_replace_of_unseen_message_is_an_insert():
    sequence = merge_all([make_message("m1", created_at=at(0))])
    replaced = replace_message(sequence, make_message("m2", created_at=at(5)))
    assert ids(replaced) == ["m1", "m2"]
