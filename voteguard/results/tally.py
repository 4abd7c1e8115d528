# voteguard/results/tally.py

from decimal import Decimal, ROUND_HALF_UP

# Pure tally math. No database access: callers pass counts in, dicts come out.
# Ties in vote count are ordered by candidate_id ascending, so the same votes
# always produce the same ranking and winners.

TIE_BREAK_RULE = 'candidate_id_ascending'


def percentage(votes, total):
    if total <= 0:
        return 0.0
    return float((Decimal(votes) * 100 / Decimal(total)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))


def rank_candidates(counts):
    """
    counts: {candidate_id: vote_count}

    Returns:
        list of (candidate_id, vote_count, rank); equal counts share a rank.
    """
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ranked = []
    for candidate_id, count in ordered:
        rank = 1 + sum(1 for other in counts.values() if other > count)
        ranked.append((candidate_id, count, rank))
    return ranked


def tally_position(position_id, title, max_winners, candidate_ids, counts, abstention_count=0):
    """
    Build the result block for one position.

    Candidates without votes are listed with zero. A candidate that holds
    votes but is missing from candidate_ids is still counted.
    """
    max_winners = max(1, max_winners or 1)
    all_counts = {candidate_id: 0 for candidate_id in candidate_ids}
    for candidate_id, count in counts.items():
        all_counts[candidate_id] = all_counts.get(candidate_id, 0) + count

    total_votes = sum(all_counts.values()) + abstention_count
    ranked = rank_candidates(all_counts)
    candidates = [{
        'candidate_id': candidate_id,
        'vote_count': count,
        'percentage': percentage(count, total_votes),
        'rank': rank,
    } for candidate_id, count, rank in ranked]

    winners = [c['candidate_id'] for c in candidates[:max_winners] if c['vote_count'] > 0]
    is_tie = False
    if len(candidates) > max_winners:
        boundary, runner_up = candidates[max_winners - 1], candidates[max_winners]
        is_tie = boundary['vote_count'] > 0 and boundary['vote_count'] == runner_up['vote_count']

    return {
        'position_id': position_id,
        'title': title,
        'max_winners': max_winners,
        'total_votes': total_votes,
        'abstention_count': abstention_count,
        'candidates': candidates,
        'winners': winners,
        'is_tie': is_tie,
        'tie_break': TIE_BREAK_RULE,
    }


def tally_election(positions, vote_counts):
    """
    positions: iterable of (position_id, title, max_winners, [candidate_id, ...])
    vote_counts: iterable of (position_id, candidate_id or None, is_abstention, count)

    Returns:
        tuple: (list of position blocks, total votes across positions)
    """
    per_position = {}
    abstentions = {}
    for position_id, candidate_id, is_abstention, count in vote_counts:
        if is_abstention or candidate_id is None:
            abstentions[position_id] = abstentions.get(position_id, 0) + count
        else:
            bucket = per_position.setdefault(position_id, {})
            bucket[candidate_id] = bucket.get(candidate_id, 0) + count

    blocks = [
        tally_position(position_id, title, max_winners, candidate_ids,
                       per_position.get(position_id, {}), abstentions.get(position_id, 0))
        for position_id, title, max_winners, candidate_ids in positions
    ]
    return blocks, sum(block['total_votes'] for block in blocks)
