from campus_connect.client.reactions import ReactionAction, aggregate, plan_toggle
from campus_connect.shared.schemas import Reaction


def _reaction(rid, user, emoji, message_id="m1"):
    return Reaction(id=rid, message_id=message_id, user_id=user, emoji=emoji)


def test_aggregate_counts_in_first_seen_order():
    counts = aggregate(
        [_reaction("1", "bob", "❤️"), _reaction("2", "alice", "\U0001F44D"), _reaction("3", "carol", "❤️")],
        "alice",
    )

    assert [(c.emoji, c.count, c.user_reacted) for c in counts] == [("❤️", 2, False), ("\U0001F44D", 1, True)]
    assert counts[0].user_ids == ["bob", "carol"]


def test_plan_toggle():
    mine = _reaction("1", "alice", "❤️")
    assert plan_toggle(None, "❤️") is ReactionAction.INSERT
    assert plan_toggle(mine, "❤️") is ReactionAction.DELETE
    assert plan_toggle(mine, "\U0001F44D") is ReactionAction.UPDATE
