import itertools
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime

from errors import AlreadyVoted, Conflict, NotFound, VoterNotFound
from models import Announcement, Candidate, Feedback, TallyRow, Voter
from store import CANDIDATE_FIELDS, BallotTransaction, Store


class _MemoryTransaction(BallotTransaction):
    def __init__(self, store):
        self._store = store
        self._votes = []
        self._voted = set()

    def lock_voter(self, voter_id):
        voter = self._store._voters.get(voter_id)
        if voter is None:
            raise VoterNotFound(voter_id)
        return voter.has_voted or voter_id in self._voted

    def active_candidates(self):
        return {cid: c for cid, c in self._store._candidates.items() if c.is_active}

    def insert_votes(self, voter_id, entries):
        taken = {(v["voter_id"], v["position"]) for v in self._store._votes}
        taken.update((v["voter_id"], v["position"]) for v in self._votes)
        for entry in entries:
            if (voter_id, entry.position) in taken:
                raise AlreadyVoted(voter_id)
            taken.add((voter_id, entry.position))
            self._votes.append(
                {"voter_id": voter_id, "candidate_id": entry.candidate_id, "position": entry.position}
            )

    def mark_voted(self, voter_id):
        if voter_id not in self._store._voters:
            raise VoterNotFound(voter_id)
        self._voted.add(voter_id)

    def _apply(self):
        now = datetime.utcnow()
        for vote in self._votes:
            vote = dict(vote, id=next(self._store._ids["votes"]), created_at=now)
            self._store._votes.append(vote)
        for voter_id in self._voted:
            self._store._voters[voter_id] = replace(self._store._voters[voter_id], has_voted=True)


class MemoryStore(Store):
    """In-process store with the same transactional guarantees as Postgres.

    A single re-entrant lock serializes transactions and reads, so a reader
    never observes a half-applied ballot. Transaction writes are staged and
    applied only when the ``with`` block exits without an exception.
    """

    def __init__(self):
        self._lock = threading.RLock()
        tables = ("voters", "candidates", "votes", "feedback", "audit", "announcements")
        self._ids = {name: itertools.count(1) for name in tables}
        self._voters = {}
        self._candidates = {}
        self._votes = []
        self._feedback = {}
        self._audit = []
        self._announcements = []
        self._settings = {}
        self._published = False
        self._published_at = None

    @contextmanager
    def transaction(self):
        with self._lock:
            tx = _MemoryTransaction(self)
            yield tx
            tx._apply()

    def candidate_vote_counts(self):
        with self._lock:
            counts = {}
            for vote in self._votes:
                counts[vote["candidate_id"]] = counts.get(vote["candidate_id"], 0) + 1
            return [
                TallyRow(candidate_id=c.id, name=c.name, position=c.position, vote_count=counts.get(c.id, 0))
                for c in self._candidates.values()
            ]

    def create_voter(self, full_name, email, student_id, password_hash, phone=None, gender=None):
        with self._lock:
            for voter in self._voters.values():
                if voter.email == email or voter.student_id == student_id:
                    raise Conflict("Email or Student ID already registered")
            voter = Voter(
                id=next(self._ids["voters"]),
                full_name=full_name,
                email=email,
                student_id=student_id,
                password_hash=password_hash,
                phone=phone,
                gender=gender,
                created_at=datetime.utcnow(),
            )
            self._voters[voter.id] = voter
            return voter

    def get_voter(self, voter_id):
        with self._lock:
            return self._voters.get(voter_id)

    def get_voter_by_email(self, email):
        with self._lock:
            for voter in self._voters.values():
                if voter.email == email:
                    return voter
            return None

    def update_voter_profile(self, voter_id, full_name, email, phone=None):
        with self._lock:
            voter = self._voters.get(voter_id)
            if voter is None:
                raise VoterNotFound(voter_id)
            if any(v.email == email and v.id != voter_id for v in self._voters.values()):
                raise Conflict("Email already registered")
            voter = replace(voter, full_name=full_name, email=email, phone=phone)
            self._voters[voter_id] = voter
            return voter

    def list_candidates(self, only_active=True):
        with self._lock:
            candidates = [c for c in self._candidates.values() if c.is_active or not only_active]
            return sorted(candidates, key=lambda c: (c.position, c.name, c.id))

    def get_candidate(self, candidate_id):
        with self._lock:
            return self._candidates.get(candidate_id)

    def add_candidate(self, name, position, gender=None, manifesto=None, photo_url=None, is_active=True):
        with self._lock:
            candidate = Candidate(
                id=next(self._ids["candidates"]),
                name=name,
                position=position,
                gender=gender,
                manifesto=manifesto,
                photo_url=photo_url,
                is_active=is_active,
            )
            self._candidates[candidate.id] = candidate
            return candidate

    def update_candidate(self, candidate_id, **fields):
        with self._lock:
            candidate = self._candidates.get(candidate_id)
            if candidate is None:
                raise NotFound("Candidate not found")
            changes = {k: v for k, v in fields.items() if k in CANDIDATE_FIELDS}
            if "position" in changes and changes["position"] != candidate.position:
                if self.candidate_vote_count(candidate_id):
                    raise Conflict("Cannot change the position of a candidate with recorded votes")
            candidate = replace(candidate, **changes)
            self._candidates[candidate_id] = candidate
            return candidate

    def delete_candidate(self, candidate_id):
        with self._lock:
            if candidate_id not in self._candidates:
                raise NotFound("Candidate not found")
            if self.candidate_vote_count(candidate_id):
                raise Conflict("Candidate has recorded votes")
            del self._candidates[candidate_id]
            self._announcements = [a for a in self._announcements if a.candidate_id != candidate_id]

    def candidate_vote_count(self, candidate_id):
        with self._lock:
            return sum(1 for v in self._votes if v["candidate_id"] == candidate_id)

    def total_votes(self):
        with self._lock:
            return len(self._votes)

    def add_feedback(self, voter_id, message, rating=None, is_registered_voter=None,
                     candidate_satisfaction=None, process_trust=None, motivation=None):
        with self._lock:
            if voter_id not in self._voters:
                raise VoterNotFound(voter_id)
            if voter_id in self._feedback:
                raise Conflict("Feedback already submitted for this voter.")
            feedback = Feedback(
                id=next(self._ids["feedback"]),
                voter_id=voter_id,
                message=message,
                rating=rating,
                is_registered_voter=is_registered_voter,
                candidate_satisfaction=candidate_satisfaction,
                process_trust=process_trust,
                motivation=motivation,
                created_at=datetime.utcnow(),
            )
            self._feedback[voter_id] = feedback
            return feedback

    def get_feedback_for_voter(self, voter_id):
        with self._lock:
            return self._feedback.get(voter_id)

    def list_feedback(self):
        with self._lock:
            rows = []
            for feedback in sorted(self._feedback.values(), key=lambda f: (f.created_at, f.id), reverse=True):
                voter = self._voters[feedback.voter_id]
                row = feedback.to_dict()
                row.update({"fullName": voter.full_name, "email": voter.email, "studentId": voter.student_id})
                rows.append(row)
            return rows

    def add_announcement(self, candidate_id, title, message, event_date=None):
        with self._lock:
            if candidate_id not in self._candidates:
                raise NotFound("Candidate not found")
            announcement = Announcement(
                id=next(self._ids["announcements"]),
                candidate_id=candidate_id,
                title=title,
                message=message,
                event_date=event_date,
                created_at=datetime.utcnow(),
            )
            self._announcements.append(announcement)
            return announcement

    def list_announcements(self):
        with self._lock:
            rows = []
            for announcement in sorted(self._announcements, key=lambda a: (a.created_at, a.id), reverse=True):
                candidate = self._candidates[announcement.candidate_id]
                row = announcement.to_dict()
                row.update({"candidateName": candidate.name, "position": candidate.position})
                rows.append(row)
            return rows

    def get_setting(self, key):
        with self._lock:
            return self._settings.get(key)

    def set_setting(self, key, value):
        with self._lock:
            self._settings[key] = value
            return value

    def get_results_status(self):
        with self._lock:
            return self._published, self._published_at

    def set_results_published(self, published):
        with self._lock:
            self._published = bool(published)
            self._published_at = datetime.utcnow() if published else None
            return self._published_at

    def election_stats(self, exclude_email=None):
        with self._lock:
            voters = [v for v in self._voters.values() if v.email != exclude_email]
            by_position = {}
            for vote in self._votes:
                by_position[vote["position"]] = by_position.get(vote["position"], 0) + 1
            return {
                "total_voters": len(voters),
                "total_candidates": len(self._candidates),
                "total_votes": len(self._votes),
                "voters_voted": sum(1 for v in voters if v.has_voted),
                "votes_by_position": sorted(by_position.items()),
            }

    def record_admin_event(self, admin_id, event_type, event_payload, risk_level, decision_hash):
        with self._lock:
            created_at = datetime.utcnow()
            event_id = next(self._ids["audit"])
            self._audit.append(
                {
                    "id": event_id,
                    "admin_id": admin_id,
                    "event_type": event_type,
                    "event_details": event_payload,
                    "risk_level": risk_level,
                    "decision_hash": decision_hash,
                    "created_at": created_at,
                }
            )
            return event_id, created_at

    def list_admin_events(self, limit=100):
        with self._lock:
            events = sorted(self._audit, key=lambda e: e["id"], reverse=True)[:limit]
            return [dict(e, created_at=e["created_at"].isoformat()) for e in events]
