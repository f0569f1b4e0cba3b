"""Storage contract for the voting backend.

The application factory builds exactly one store and every service receives it
as an argument. ``PostgresStore`` (store_postgres.py) is the production
implementation; ``MemoryStore`` (store_memory.py) keeps the same guarantees in
process and backs the test suite.
"""


class BallotTransaction:
    """Unit of work for one ballot submission.

    Obtained from ``Store.transaction()``. Writes become visible to other
    readers only when the surrounding ``with`` block exits cleanly.
    """

    def lock_voter(self, voter_id):
        """Lock the voter row and return its ``has_voted`` flag.

        Raises ``VoterNotFound`` for an unknown voter.
        """
        raise NotImplementedError

    def active_candidates(self):
        """Return ``{candidate_id: Candidate}`` for the current ballot."""
        raise NotImplementedError

    def insert_votes(self, voter_id, entries):
        raise NotImplementedError

    def mark_voted(self, voter_id):
        raise NotImplementedError


class Store:
    def transaction(self):
        raise NotImplementedError

    def candidate_vote_counts(self):
        """Every candidate with its committed vote count, as ``TallyRow``s."""
        raise NotImplementedError

    # voters

    def create_voter(self, full_name, email, student_id, password_hash, phone=None, gender=None):
        raise NotImplementedError

    def get_voter(self, voter_id):
        raise NotImplementedError

    def get_voter_by_email(self, email):
        raise NotImplementedError

    def update_voter_profile(self, voter_id, full_name, email, phone=None):
        """Raises ``VoterNotFound`` for an unknown voter and ``Conflict`` for a taken email."""
        raise NotImplementedError

    # candidates

    def list_candidates(self, only_active=True):
        raise NotImplementedError

    def get_candidate(self, candidate_id):
        raise NotImplementedError

    def add_candidate(self, name, position, gender=None, manifesto=None, photo_url=None, is_active=True):
        raise NotImplementedError

    def update_candidate(self, candidate_id, **fields):
        raise NotImplementedError

    def delete_candidate(self, candidate_id):
        raise NotImplementedError

    def candidate_vote_count(self, candidate_id):
        raise NotImplementedError

    def total_votes(self):
        raise NotImplementedError

    # feedback

    def add_feedback(self, voter_id, message, rating=None, is_registered_voter=None,
                     candidate_satisfaction=None, process_trust=None, motivation=None):
        raise NotImplementedError

    def get_feedback_for_voter(self, voter_id):
        raise NotImplementedError

    def list_feedback(self):
        raise NotImplementedError

    # announcements

    def add_announcement(self, candidate_id, title, message, event_date=None):
        raise NotImplementedError

    def list_announcements(self):
        """Newest first, each joined with its candidate's name and position."""
        raise NotImplementedError

    # system settings

    def get_setting(self, key):
        raise NotImplementedError

    def set_setting(self, key, value):
        raise NotImplementedError

    # results publication

    def get_results_status(self):
        """Return ``(published, published_at)``."""
        raise NotImplementedError

    def set_results_published(self, published):
        raise NotImplementedError

    # admin

    def election_stats(self, exclude_email=None):
        raise NotImplementedError

    def record_admin_event(self, admin_id, event_type, event_payload, risk_level, decision_hash):
        raise NotImplementedError

    def list_admin_events(self, limit=100):
        raise NotImplementedError

    def close(self):
        pass


CANDIDATE_FIELDS = ("name", "position", "gender", "manifesto", "photo_url", "is_active")
