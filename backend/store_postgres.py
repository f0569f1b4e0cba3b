import json
import logging
from contextlib import contextmanager

import psycopg2
import psycopg2.errors
from psycopg2 import sql
from psycopg2.extras import execute_values

from errors import AlreadyVoted, Conflict, NotFound, StorageUnavailable, VoterNotFound
from models import Announcement, Candidate, Feedback, TallyRow, Voter
from store import CANDIDATE_FIELDS, BallotTransaction, Store

logger = logging.getLogger(__name__)

VOTER_COLUMNS = "id, full_name, email, student_id, password_hash, has_voted, phone, gender, created_at"
CANDIDATE_COLUMNS = "id, name, position, gender, manifesto, photo_url, is_active"
FEEDBACK_COLUMNS = (
    "id, voter_id, message, rating, is_registered_voter, candidate_satisfaction, "
    "process_trust, motivation, created_at"
)
ANNOUNCEMENT_COLUMNS = "id, candidate_id, title, message, event_date, created_at"


def _voter_from_row(row):
    if not row:
        return None
    return Voter(
        id=row[0],
        full_name=row[1],
        email=row[2],
        student_id=row[3],
        password_hash=row[4],
        has_voted=bool(row[5]),
        phone=row[6],
        gender=row[7],
        created_at=row[8],
    )


def _candidate_from_row(row):
    if not row:
        return None
    return Candidate(
        id=row[0],
        name=row[1],
        position=row[2],
        gender=row[3],
        manifesto=row[4],
        photo_url=row[5],
        is_active=bool(row[6]),
    )


def _feedback_from_row(row):
    if not row:
        return None
    return Feedback(*row)


class _PostgresTransaction(BallotTransaction):
    def __init__(self, cur):
        self.cur = cur

    def lock_voter(self, voter_id):
        self.cur.execute("SELECT has_voted FROM voters WHERE id = %s FOR UPDATE", (voter_id,))
        row = self.cur.fetchone()
        if not row:
            raise VoterNotFound(voter_id)
        return bool(row[0])

    def active_candidates(self):
        # FOR SHARE holds off concurrent position edits until this ballot commits.
        self.cur.execute(f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE is_active ORDER BY id FOR SHARE")
        return {row[0]: _candidate_from_row(row) for row in self.cur.fetchall()}

    def insert_votes(self, voter_id, entries):
        try:
            execute_values(
                self.cur,
                "INSERT INTO votes (voter_id, candidate_id, position) VALUES %s",
                [(voter_id, entry.candidate_id, entry.position) for entry in entries],
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise AlreadyVoted(voter_id) from exc

    def mark_voted(self, voter_id):
        self.cur.execute("UPDATE voters SET has_voted = TRUE WHERE id = %s AND NOT has_voted", (voter_id,))
        if self.cur.rowcount != 1:
            raise AlreadyVoted(voter_id)


class PostgresStore(Store):
    def __init__(self, database, lock_timeout_ms=5000):
        self.database = database
        self.lock_timeout_ms = lock_timeout_ms

    @contextmanager
    def _cursor(self):
        with self.database.connection() as conn:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
                self._safe_rollback(conn)
                logger.warning("Database operation failed: %s", exc)
                raise StorageUnavailable() from exc
            except Exception:
                self._safe_rollback(conn)
                raise
            finally:
                cur.close()

    @staticmethod
    def _safe_rollback(conn):
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error:
            logger.exception("Rollback failed")

    @contextmanager
    def transaction(self):
        with self._cursor() as cur:
            cur.execute("SET LOCAL lock_timeout = %s", (self.lock_timeout_ms,))
            yield _PostgresTransaction(cur)

    def candidate_vote_counts(self):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.position, COUNT(v.id)
                FROM candidates c
                LEFT JOIN votes v ON c.id = v.candidate_id
                GROUP BY c.id, c.name, c.position
                """
            )
            return [TallyRow(candidate_id=r[0], name=r[1], position=r[2], vote_count=int(r[3])) for r in cur.fetchall()]

    def create_voter(self, full_name, email, student_id, password_hash, phone=None, gender=None):
        try:
            with self._cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO voters (full_name, email, student_id, password_hash, phone, gender)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {VOTER_COLUMNS}
                    """,
                    (full_name, email, student_id, password_hash, phone, gender),
                )
                return _voter_from_row(cur.fetchone())
        except psycopg2.errors.UniqueViolation as exc:
            raise Conflict("Email or Student ID already registered") from exc

    def get_voter(self, voter_id):
        with self._cursor() as cur:
            cur.execute(f"SELECT {VOTER_COLUMNS} FROM voters WHERE id = %s", (voter_id,))
            return _voter_from_row(cur.fetchone())

    def get_voter_by_email(self, email):
        with self._cursor() as cur:
            cur.execute(f"SELECT {VOTER_COLUMNS} FROM voters WHERE email = %s", (email,))
            return _voter_from_row(cur.fetchone())

    def update_voter_profile(self, voter_id, full_name, email, phone=None):
        try:
            with self._cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE voters SET full_name = %s, email = %s, phone = %s
                    WHERE id = %s
                    RETURNING {VOTER_COLUMNS}
                    """,
                    (full_name, email, phone, voter_id),
                )
                voter = _voter_from_row(cur.fetchone())
                if voter is None:
                    raise VoterNotFound(voter_id)
                return voter
        except psycopg2.errors.UniqueViolation as exc:
            raise Conflict("Email already registered") from exc

    def list_candidates(self, only_active=True):
        with self._cursor() as cur:
            where = "WHERE is_active" if only_active else ""
            cur.execute(f"SELECT {CANDIDATE_COLUMNS} FROM candidates {where} ORDER BY position, name, id")
            return [_candidate_from_row(row) for row in cur.fetchall()]

    def get_candidate(self, candidate_id):
        with self._cursor() as cur:
            cur.execute(f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE id = %s", (candidate_id,))
            return _candidate_from_row(cur.fetchone())

    def add_candidate(self, name, position, gender=None, manifesto=None, photo_url=None, is_active=True):
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO candidates (name, position, gender, manifesto, photo_url, is_active)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {CANDIDATE_COLUMNS}
                """,
                (name, position, gender, manifesto, photo_url, is_active),
            )
            return _candidate_from_row(cur.fetchone())

    def update_candidate(self, candidate_id, **fields):
        changes = {k: v for k, v in fields.items() if k in CANDIDATE_FIELDS}
        with self._cursor() as cur:
            cur.execute(f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE id = %s FOR UPDATE", (candidate_id,))
            current = _candidate_from_row(cur.fetchone())
            if current is None:
                raise NotFound("Candidate not found")
            if "position" in changes and changes["position"] != current.position:
                cur.execute("SELECT COUNT(*) FROM votes WHERE candidate_id = %s", (candidate_id,))
                if cur.fetchone()[0]:
                    raise Conflict("Cannot change the position of a candidate with recorded votes")
            if not changes:
                return current
            assignments = sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder()) for column in changes
            )
            cur.execute(
                sql.SQL("UPDATE candidates SET {} WHERE id = {} RETURNING " + CANDIDATE_COLUMNS).format(
                    assignments, sql.Placeholder()
                ),
                list(changes.values()) + [candidate_id],
            )
            return _candidate_from_row(cur.fetchone())

    def delete_candidate(self, candidate_id):
        try:
            with self._cursor() as cur:
                cur.execute("SELECT id FROM candidates WHERE id = %s FOR UPDATE", (candidate_id,))
                if not cur.fetchone():
                    raise NotFound("Candidate not found")
                cur.execute("SELECT COUNT(*) FROM votes WHERE candidate_id = %s", (candidate_id,))
                if cur.fetchone()[0]:
                    raise Conflict("Candidate has recorded votes")
                cur.execute("DELETE FROM candidates WHERE id = %s", (candidate_id,))
        except psycopg2.errors.ForeignKeyViolation as exc:
            raise Conflict("Candidate has recorded votes") from exc

    def candidate_vote_count(self, candidate_id):
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM votes WHERE candidate_id = %s", (candidate_id,))
            return int(cur.fetchone()[0])

    def total_votes(self):
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM votes")
            return int(cur.fetchone()[0])

    def add_feedback(self, voter_id, message, rating=None, is_registered_voter=None,
                     candidate_satisfaction=None, process_trust=None, motivation=None):
        try:
            with self._cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO feedback
                        (voter_id, message, rating, is_registered_voter, candidate_satisfaction, process_trust, motivation)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {FEEDBACK_COLUMNS}
                    """,
                    (voter_id, message, rating, is_registered_voter, candidate_satisfaction, process_trust, motivation),
                )
                return _feedback_from_row(cur.fetchone())
        except psycopg2.errors.UniqueViolation as exc:
            raise Conflict("Feedback already submitted for this voter.") from exc
        except psycopg2.errors.ForeignKeyViolation as exc:
            raise VoterNotFound(voter_id) from exc

    def get_feedback_for_voter(self, voter_id):
        with self._cursor() as cur:
            cur.execute(f"SELECT {FEEDBACK_COLUMNS} FROM feedback WHERE voter_id = %s", (voter_id,))
            return _feedback_from_row(cur.fetchone())

    def list_feedback(self):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT f.id, f.voter_id, f.message, f.rating, f.is_registered_voter, f.candidate_satisfaction,
                       f.process_trust, f.motivation, f.created_at, v.full_name, v.email, v.student_id
                FROM feedback f
                INNER JOIN voters v ON f.voter_id = v.id
                ORDER BY f.created_at DESC, f.id DESC
                """
            )
            rows = []
            for r in cur.fetchall():
                row = Feedback(*r[:9]).to_dict()
                row.update({"fullName": r[9], "email": r[10], "studentId": r[11]})
                rows.append(row)
            return rows

    def add_announcement(self, candidate_id, title, message, event_date=None):
        try:
            with self._cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO announcements (candidate_id, title, message, event_date)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {ANNOUNCEMENT_COLUMNS}
                    """,
                    (candidate_id, title, message, event_date),
                )
                return Announcement(*cur.fetchone())
        except psycopg2.errors.ForeignKeyViolation as exc:
            raise NotFound("Candidate not found") from exc

    def list_announcements(self):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT a.id, a.candidate_id, a.title, a.message, a.event_date, a.created_at, c.name, c.position
                FROM announcements a
                INNER JOIN candidates c ON a.candidate_id = c.id
                ORDER BY a.created_at DESC, a.id DESC
                """
            )
            rows = []
            for r in cur.fetchall():
                row = Announcement(*r[:6]).to_dict()
                row.update({"candidateName": r[6], "position": r[7]})
                rows.append(row)
            return rows

    def get_setting(self, key):
        with self._cursor() as cur:
            cur.execute("SELECT setting_value FROM system_settings WHERE setting_key = %s", (key,))
            row = cur.fetchone()
            return row[0] if row else None

    def set_setting(self, key, value):
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO system_settings (setting_key, setting_value)
                VALUES (%s, %s)
                ON CONFLICT (setting_key) DO UPDATE
                SET setting_value = EXCLUDED.setting_value, updated_at = NOW()
                """,
                (key, value),
            )
            return value

    def get_results_status(self):
        with self._cursor() as cur:
            cur.execute("SELECT published, published_at FROM results_publication WHERE id = 1")
            row = cur.fetchone()
            if not row:
                return False, None
            return bool(row[0]), row[1]

    def set_results_published(self, published):
        with self._cursor() as cur:
            if published:
                cur.execute(
                    "UPDATE results_publication SET published = TRUE, published_at = NOW() WHERE id = 1 RETURNING published_at"
                )
                row = cur.fetchone()
                return row[0] if row else None
            cur.execute("UPDATE results_publication SET published = FALSE, published_at = NULL WHERE id = 1")
            return None

    def election_stats(self, exclude_email=None):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*), COUNT(*) FILTER (WHERE has_voted)
                FROM voters
                WHERE %s IS NULL OR LOWER(email) <> %s
                """,
                (exclude_email, exclude_email),
            )
            total_voters, voters_voted = cur.fetchone()
            cur.execute("SELECT COUNT(*) FROM candidates")
            total_candidates = cur.fetchone()[0]
            cur.execute("SELECT COUNT(*) FROM votes")
            total_votes = cur.fetchone()[0]
            cur.execute("SELECT position, COUNT(*) FROM votes GROUP BY position ORDER BY position")
            by_position = [(r[0], int(r[1])) for r in cur.fetchall()]
            return {
                "total_voters": int(total_voters),
                "total_candidates": int(total_candidates),
                "total_votes": int(total_votes),
                "voters_voted": int(voters_voted),
                "votes_by_position": by_position,
            }

    def record_admin_event(self, admin_id, event_type, event_payload, risk_level, decision_hash):
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO admin_audit_log (admin_id, event_type, event_details, risk_level, decision_hash)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id, created_at
                """,
                (admin_id, event_type, json.dumps(event_payload, sort_keys=True), risk_level, decision_hash),
            )
            row = cur.fetchone()
            return row[0], row[1]

    def list_admin_events(self, limit=100):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, admin_id, event_type, event_details, risk_level, decision_hash, created_at
                FROM admin_audit_log
                ORDER BY id DESC
                LIMIT %s
                """,
                (limit,),
            )
            events = []
            for r in cur.fetchall():
                details = json.loads(r[3]) if isinstance(r[3], str) else r[3]
                events.append(
                    {
                        "id": r[0],
                        "admin_id": r[1],
                        "event_type": r[2],
                        "event_details": details,
                        "risk_level": r[4],
                        "decision_hash": r[5],
                        "created_at": r[6].isoformat() if r[6] else None,
                    }
                )
            return events

    def close(self):
        self.database.close()
