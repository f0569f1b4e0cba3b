import csv
from io import StringIO


def _turnout_percent(voters_voted, total_voters):
    if not total_voters:
        return 0
    return round(voters_voted * 100 / total_voters)


def admin_stats(store, admin_email=None):
    stats = store.election_stats(exclude_email=admin_email)
    return {
        "totalVoters": stats["total_voters"],
        "totalCandidates": stats["total_candidates"],
        "totalVotes": stats["total_votes"],
        "votersVoted": stats["voters_voted"],
        "turnoutPercent": _turnout_percent(stats["voters_voted"], stats["total_voters"]),
        "votesByPosition": [
            {"position": position, "totalVotes": count} for position, count in stats["votes_by_position"]
        ],
    }


def turnout_csv(stats):
    buffer = StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(["Metric", "Value"])
    writer.writerow(["Total voters", stats["totalVoters"]])
    writer.writerow(["Total candidates", stats["totalCandidates"]])
    writer.writerow(["Total votes cast", stats["totalVotes"]])
    writer.writerow(["Voters who voted", stats["votersVoted"]])
    writer.writerow(["Turnout (%)", stats["turnoutPercent"]])
    writer.writerow([])
    writer.writerow(["Position", "Votes"])
    for row in stats["votesByPosition"]:
        writer.writerow([row["position"], row["totalVotes"]])
    return buffer.getvalue()


def candidates_csv(results, candidates):
    details = {c.id: c for c in candidates}
    buffer = StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(["CandidateId", "Name", "Position", "Gender", "Votes", "Rank", "Manifesto"])
    for row in results:
        candidate = details.get(row["candidateId"])
        writer.writerow(
            [
                row["candidateId"],
                row["name"],
                row["position"],
                candidate.gender if candidate and candidate.gender else "",
                row["voteCount"],
                row["rank"],
                candidate.manifesto if candidate and candidate.manifesto else "",
            ]
        )
    return buffer.getvalue()
