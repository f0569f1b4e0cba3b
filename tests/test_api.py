import csv
from io import StringIO

import pytest

from app import create_app
from config import Config
from errors import StorageUnavailable
from store_memory import MemoryStore

from conftest import ADMIN_EMAIL, PASSWORD


def _headers(voter):
    return {"X-Voter-Id": str(voter.id)}


def _ballot(election, president=None):
    return {
        "votes": [
            {"position": "president", "candidateId": (president or election.a).id},
            {"position": "secretary", "candidateId": election.c.id},
        ]
    }


class TestVotes:
    def test_cast_votes(self, client, store, election, make_voter):
        voter = make_voter()

        resp = client.post("/api/votes", json=_ballot(election), headers=_headers(voter))

        assert resp.status_code == 200
        assert resp.get_json()["message"] == "Votes recorded successfully"
        assert store.get_voter(voter.id).has_voted is True

    def test_second_ballot_is_forbidden(self, client, election, make_voter):
        voter = make_voter()
        client.post("/api/votes", json=_ballot(election), headers=_headers(voter))

        resp = client.post("/api/votes", json=_ballot(election, president=election.b), headers=_headers(voter))

        assert resp.status_code == 403
        assert resp.get_json() == {"error": "already voted"}

    def test_missing_position_is_bad_request(self, client, store, election, make_voter):
        voter = make_voter()

        resp = client.post(
            "/api/votes",
            json={"votes": [{"position": "president", "candidateId": election.a.id}]},
            headers=_headers(voter),
        )

        assert resp.status_code == 400
        body = resp.get_json()
        assert body["constraint"] == "missing_positions"
        assert body["positions"] == ["secretary"]
        assert store.total_votes() == 0

    def test_malformed_body(self, client, election, make_voter):
        resp = client.post("/api/votes", json={"votes": "president"}, headers=_headers(make_voter()))

        assert resp.status_code == 400
        assert resp.get_json()["constraint"] == "malformed_votes"

    def test_requires_voter_identity(self, client, election):
        resp = client.post("/api/votes", json=_ballot(election))

        assert resp.status_code == 401

    @pytest.mark.parametrize("header", ["abc", "-1", "²", "1.5"])
    def test_non_integer_voter_identity(self, client, election, header):
        resp = client.post("/api/votes", json=_ballot(election), headers={"X-Voter-Id": header})

        assert resp.status_code == 401

    def test_unknown_voter(self, client, election):
        resp = client.post("/api/votes", json=_ballot(election), headers={"X-Voter-Id": "9999"})

        assert resp.status_code == 404

    def test_malformed_body_is_rejected_before_the_voted_flag(self, client, store, election, make_voter):
        voter = make_voter()
        client.post("/api/votes", json=_ballot(election), headers=_headers(voter))

        malformed = client.post("/api/votes", json={"votes": []}, headers=_headers(voter))
        well_formed = client.post("/api/votes", json={"votes": [{"position": "treasurer", "candidateId": 1}]},
                                  headers=_headers(voter))

        assert malformed.status_code == 400
        assert malformed.get_json()["constraint"] == "malformed_votes"
        assert well_formed.status_code == 403
        assert store.total_votes() == 2

    def test_storage_failure_is_reported_as_retryable(self, election, make_voter, store):
        class FlakyStore(MemoryStore):
            def transaction(self):
                raise StorageUnavailable()

        flaky = FlakyStore()
        flaky._voters = store._voters
        client = create_app(Config(), store=flaky).test_client()

        resp = client.post("/api/votes", json=_ballot(election), headers=_headers(make_voter()))

        assert resp.status_code == 500
        assert resp.get_json() == {"error": "storage unavailable", "retryable": True}


class TestResults:
    def test_empty(self, client):
        resp = client.get("/api/votes/results")

        assert resp.status_code == 200
        assert resp.get_json() == []

    def test_ranked_results(self, client, election, make_voter):
        client.post("/api/votes", json=_ballot(election, president=election.b), headers=_headers(make_voter()))

        rows = client.get("/api/votes/results").get_json()

        assert rows[0] == {
            "position": "president",
            "candidateId": election.b.id,
            "name": "Bilal",
            "voteCount": 1,
            "rank": 1,
        }
        assert [r["voteCount"] for r in rows] == [1, 0, 1]

    def test_unexpected_failure_returns_no_partial_results(self):
        class BrokenStore(MemoryStore):
            def candidate_vote_counts(self):
                raise RuntimeError("boom")

        client = create_app(Config(), store=BrokenStore()).test_client()

        resp = client.get("/api/votes/results")

        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Failed to fetch results"}

    def test_summary(self, client, election, make_voter):
        client.post("/api/votes", json=_ballot(election), headers=_headers(make_voter()))

        body = client.get("/api/votes/summary").get_json()

        assert body["published"] is False
        assert [p["position"] for p in body["positions"]] == ["president", "secretary"]
        assert body["positions"][0]["winner"]["name"] == "Asha"


class TestAuth:
    def _register(self, client, **overrides):
        payload = {
            "fullName": "Priya Nair",
            "email": "Priya@College.edu ",
            "studentId": "S1001",
            "password": PASSWORD,
            "phone": "+91 98765 43210",
        }
        payload.update(overrides)
        return client.post("/api/auth/register", json=payload)

    def test_register_and_login(self, client):
        resp = self._register(client)
        assert resp.status_code == 201

        login = client.post("/api/auth/login", json={"email": "priya@college.edu", "password": PASSWORD})

        assert login.status_code == 200
        body = login.get_json()
        assert body["email"] == "priya@college.edu"
        assert body["role"] == "voter"
        assert body["hasVoted"] is False

    def test_duplicate_registration(self, client):
        self._register(client)

        resp = self._register(client, email="other@college.edu")

        assert resp.status_code == 409

    @pytest.mark.parametrize(
        "overrides",
        [{"password": "short"}, {"password": "alllowercase1!"}, {"email": "not-an-email"}, {"fullName": ""},
         {"phone": "12"}],
    )
    def test_registration_validation(self, client, overrides):
        assert self._register(client, **overrides).status_code == 400

    def test_bad_credentials(self, client, make_voter):
        voter = make_voter()

        resp = client.post("/api/auth/login", json={"email": voter.email, "password": "Wrong!pass1"})

        assert resp.status_code == 401
        assert resp.get_json() == {"error": "Invalid credentials"}

    def test_admin_role(self, client, make_voter):
        make_voter(email=ADMIN_EMAIL)

        resp = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": PASSWORD})

        assert resp.get_json()["role"] == "admin"

    def test_profile(self, client, make_voter):
        voter = make_voter()

        body = client.get("/api/voters/me", headers=_headers(voter)).get_json()

        assert body["voterId"] == voter.id
        assert "password_hash" not in body and "passwordHash" not in body


class TestCandidates:
    def test_list_only_active(self, client, store, election):
        store.update_candidate(election.b.id, is_active=False)

        names = [c["name"] for c in client.get("/api/candidates").get_json()]

        assert names == ["Asha", "Chen"]

    def test_add_candidate(self, client, store):
        resp = client.post("/api/candidates", json={"name": "Dev", "position": "treasurer", "admin_id": "root"})

        assert resp.status_code == 201
        assert resp.get_json()["candidate"]["position"] == "treasurer"
        assert store.list_admin_events()[0]["event_type"] == "CANDIDATE_ADDED"

    def test_failed_add_is_not_audited(self):
        class FailingStore(MemoryStore):
            def add_candidate(self, *args, **kwargs):
                raise StorageUnavailable()

        failing = FailingStore()
        client = create_app(Config(), store=failing).test_client()

        resp = client.post("/api/candidates", json={"name": "Dev", "position": "treasurer"})

        assert resp.status_code == 500
        assert failing.list_admin_events() == []

    def test_add_candidate_requires_name_and_position(self, client):
        assert client.post("/api/candidates", json={"name": "Dev"}).status_code == 400

    def test_position_is_locked_once_votes_exist(self, client, election, make_voter):
        client.post("/api/votes", json=_ballot(election), headers=_headers(make_voter()))

        resp = client.put(f"/api/candidates/{election.a.id}", json={"position": "secretary"})

        assert resp.status_code == 409

    def test_update_candidate(self, client, election):
        resp = client.put(f"/api/candidates/{election.a.id}", json={"manifesto": "Longer library hours"})

        assert resp.status_code == 200
        assert resp.get_json()["candidate"]["manifesto"] == "Longer library hours"

    def test_delete_candidate_without_votes(self, client, store, election):
        assert client.delete(f"/api/candidates/{election.b.id}").status_code == 200
        assert store.get_candidate(election.b.id) is None

    def test_delete_candidate_with_votes_is_refused(self, client, election, make_voter):
        client.post("/api/votes", json=_ballot(election), headers=_headers(make_voter()))

        assert client.delete(f"/api/candidates/{election.a.id}").status_code == 409

    def test_missing_candidate(self, client):
        assert client.put("/api/candidates/42", json={"name": "X"}).status_code == 404
        assert client.delete("/api/candidates/42").status_code == 404

    def test_ballot_change_after_voting_is_high_risk(self, client, store, election, make_voter):
        client.post("/api/votes", json=_ballot(election), headers=_headers(make_voter()))

        client.post("/api/candidates", json={"name": "Late", "position": "president"})

        assert store.list_admin_events()[0]["risk_level"] == "HIGH"


class TestAdmin:
    def test_publish_and_unpublish(self, client, store):
        assert client.get("/api/admin/results-status").get_json()["published"] is False

        published = client.post("/api/admin/publish-results", json={"admin_id": "root"}).get_json()
        assert published["published"] is True
        assert published["publishedAt"]

        client.post("/api/admin/unpublish-results", json={"admin_id": "root"})

        assert client.get("/api/admin/results-status").get_json() == {"published": False, "publishedAt": None}
        events = client.get("/api/admin/audit-log").get_json()
        assert events[0]["event_type"] == "RESULTS_UNPUBLISHED_AFTER_PUBLICATION"
        assert events[0]["risk_level"] == "CRITICAL"
        assert all(e["verified"] for e in events)

    def test_stats(self, client, election, make_voter):
        make_voter(email=ADMIN_EMAIL)
        voters = [make_voter() for _ in range(3)]
        client.post("/api/votes", json=_ballot(election), headers=_headers(voters[0]))

        stats = client.get("/api/admin/stats").get_json()

        assert stats["totalVoters"] == 3
        assert stats["totalCandidates"] == 3
        assert stats["totalVotes"] == 2
        assert stats["votersVoted"] == 1
        assert stats["turnoutPercent"] == 33
        assert stats["votesByPosition"] == [
            {"position": "president", "totalVotes": 1},
            {"position": "secretary", "totalVotes": 1},
        ]

    def test_turnout_report(self, client, make_voter):
        make_voter()

        resp = client.get("/api/admin/report/turnout")

        assert resp.mimetype == "text/csv"
        assert "turnout_report.csv" in resp.headers["Content-Disposition"]
        rows = list(csv.reader(StringIO(resp.get_data(as_text=True))))
        assert rows[0] == ["Metric", "Value"]
        assert ["Total voters", "1"] in rows

    def test_candidates_report(self, client, store, election):
        store.update_candidate(election.a.id, manifesto="Free Wi-Fi, everywhere")

        resp = client.get("/api/admin/report/candidates")

        rows = list(csv.reader(StringIO(resp.get_data(as_text=True))))
        assert rows[0] == ["CandidateId", "Name", "Position", "Gender", "Votes", "Rank", "Manifesto"]
        assert rows[1][1] == "Asha"
        assert rows[1][-1] == "Free Wi-Fi, everywhere"

    def test_audit_log_limit(self, client):
        assert client.get("/api/admin/audit-log?limit=0").status_code == 400


class TestFeedback:
    def test_submit_once(self, client, make_voter):
        voter = make_voter()
        payload = {"message": "Smooth process", "candidateSatisfaction": 4, "isRegisteredVoter": "yes"}

        first = client.post("/api/feedback", json=payload, headers=_headers(voter))
        second = client.post("/api/feedback", json=payload, headers=_headers(voter))

        assert first.status_code == 201
        assert second.status_code == 409

        mine = client.get("/api/feedback/me", headers=_headers(voter)).get_json()
        assert mine["hasFeedback"] is True
        assert mine["feedback"]["rating"] == 4
        assert mine["feedback"]["isRegisteredVoter"] is True

    def test_no_feedback_yet(self, client, make_voter):
        body = client.get("/api/feedback/me", headers=_headers(make_voter())).get_json()

        assert body == {"hasFeedback": False}

    @pytest.mark.parametrize(
        "payload",
        [{"message": ""}, {"message": "ok", "processTrust": 9}, {"message": "ok", "motivation": "angry"}],
    )
    def test_validation(self, client, make_voter, payload):
        assert client.post("/api/feedback", json=payload, headers=_headers(make_voter())).status_code == 400

    def test_admin_listing_includes_voter(self, client, make_voter):
        voter = make_voter()
        client.post("/api/feedback", json={"feedback": "More polling booths"}, headers=_headers(voter))

        rows = client.get("/api/feedback").get_json()

        assert rows[0]["message"] == "More polling booths"
        assert rows[0]["email"] == voter.email


class TestSettings:
    def test_update_profile(self, client, store, make_voter):
        voter = make_voter()

        resp = client.put(
            "/api/settings/profile",
            json={"fullName": "Voter Renamed", "email": " New@College.edu", "phone": "+91 98765 43210"},
            headers=_headers(voter),
        )

        assert resp.status_code == 200
        assert resp.get_json()["profile"]["email"] == "new@college.edu"
        updated = store.get_voter(voter.id)
        assert (updated.full_name, updated.phone) == ("Voter Renamed", "+919876543210")
        assert updated.password_hash == voter.password_hash

    def test_profile_email_taken_by_another_voter(self, client, make_voter):
        other = make_voter()
        voter = make_voter()

        resp = client.put(
            "/api/settings/profile", json={"fullName": "X", "email": other.email}, headers=_headers(voter)
        )

        assert resp.status_code == 409

    @pytest.mark.parametrize(
        "payload", [{"email": "a@b.co"}, {"fullName": "X"}, {"fullName": "X", "email": "nope"},
                    {"fullName": "X", "email": "a@b.co", "phone": "12"}],
    )
    def test_profile_validation(self, client, make_voter, payload):
        resp = client.put("/api/settings/profile", json=payload, headers=_headers(make_voter()))

        assert resp.status_code == 400

    def test_profile_of_unknown_voter(self, client):
        resp = client.put(
            "/api/settings/profile", json={"fullName": "X", "email": "a@b.co"}, headers={"X-Voter-Id": "77"}
        )

        assert resp.status_code == 404

    def test_election_date(self, client, store):
        assert client.get("/api/settings/election-date").get_json() == {"electionDate": None}

        first = client.put("/api/settings/election-date", json={"electionDate": "2026-11-03", "admin_id": "root"})
        client.put("/api/settings/election-date", json={"electionDate": "2026-11-10", "admin_id": "root"})

        assert first.status_code == 200
        assert client.get("/api/settings/election-date").get_json() == {"electionDate": "2026-11-10"}
        events = store.list_admin_events()
        assert [e["event_type"] for e in events] == ["ELECTION_DATE_SET", "ELECTION_DATE_SET"]
        assert [e["risk_level"] for e in events] == ["MEDIUM", "LOW"]

    @pytest.mark.parametrize("payload", [{}, {"electionDate": ""}, {"electionDate": "03/11/2026"},
                                         {"electionDate": "2026-02-30"}])
    def test_election_date_validation(self, client, payload):
        assert client.put("/api/settings/election-date", json=payload).status_code == 400


class TestAnnouncements:
    def test_post_and_list(self, client, store, election):
        resp = client.post(
            "/api/announcements",
            json={"candidateId": str(election.a.id), "title": "Town hall", "message": "Main quad at noon",
                  "eventDate": "2026-11-01T12:00:00"},
        )

        assert resp.status_code == 201
        rows = client.get("/api/announcements").get_json()
        assert len(rows) == 1
        assert rows[0]["candidateName"] == "Asha"
        assert rows[0]["position"] == "president"
        assert rows[0]["eventDate"] == "2026-11-01T12:00:00"
        assert store.list_admin_events()[0]["event_type"] == "ANNOUNCEMENT_POSTED"

    def test_newest_first(self, client, election):
        for title in ("First", "Second"):
            client.post("/api/announcements", json={"candidateId": election.c.id, "title": title, "message": "m"})

        assert [r["title"] for r in client.get("/api/announcements").get_json()] == ["Second", "First"]

    def test_unknown_candidate(self, client):
        resp = client.post("/api/announcements", json={"candidateId": 42, "title": "t", "message": "m"})

        assert resp.status_code == 404

    @pytest.mark.parametrize(
        "payload",
        [{"title": "t", "message": "m"}, {"candidateId": 1, "message": "m"}, {"candidateId": 1, "title": "t"},
         {"candidateId": 1, "title": "x" * 151, "message": "m"},
         {"candidateId": 1, "title": "t", "message": "m", "eventDate": "soon"}],
    )
    def test_validation(self, client, election, payload):
        assert client.post("/api/announcements", json=payload).status_code == 400

    def test_removed_with_their_candidate(self, client, election):
        client.post("/api/announcements", json={"candidateId": election.b.id, "title": "t", "message": "m"})

        client.delete(f"/api/candidates/{election.b.id}")

        assert client.get("/api/announcements").get_json() == []


def test_health(client):
    assert client.get("/api/health").get_json()["status"] == "ok"
