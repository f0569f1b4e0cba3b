from itertools import groupby


def _ranking_key(row):
    return row.position, -row.vote_count, row.candidate_id


def compute_results(store):
    rows = sorted(store.candidate_vote_counts(), key=_ranking_key)
    results = []
    for _position, group in groupby(rows, key=lambda r: r.position):
        for rank, row in enumerate(group, start=1):
            results.append(
                {
                    "position": row.position,
                    "candidateId": row.candidate_id,
                    "name": row.name,
                    "voteCount": row.vote_count,
                    "rank": rank,
                }
            )
    return results


def summarize_results(results):
    summaries = []
    for position, group in groupby(results, key=lambda r: r["position"]):
        ranked = list(group)
        top = ranked[0]
        runner_up = ranked[1] if len(ranked) > 1 else None
        tie = bool(runner_up) and top["voteCount"] > 0 and top["voteCount"] == runner_up["voteCount"]
        summaries.append(
            {
                "position": position,
                "totalVotes": sum(r["voteCount"] for r in ranked),
                "winner": top if top["voteCount"] > 0 and not tie else None,
                "tie": tie,
                "candidates": ranked,
            }
        )
    return summaries
