import logging
from datetime import datetime

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_cors import CORS

import reports
from admin_audit import DEFAULT_ADMIN_ID, ballot_change_risk, log_admin_event, verify_event_hash
from ballots import selections_from_votes, submit_ballot
from config import Config, configure_logging
from db import Database, ensure_schema
from errors import NotFound, StorageUnavailable, Unauthorized, ValidationError, VotingError
from store_postgres import PostgresStore
from tally import compute_results, summarize_results
from voters import authenticate, register_voter, role_for, update_profile

logger = logging.getLogger(__name__)

VOTER_ID_HEADER = "X-Voter-Id"
MOTIVATIONS = ("more", "less", "same")
ELECTION_DATE_KEY = "election_date"
MAX_TITLE_LENGTH = 150

api = Blueprint("api", __name__, url_prefix="/api")


def _store():
    return current_app.extensions["ballot_store"]


def _config():
    return current_app.config["VOTING"]


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _current_voter_id():
    raw = (request.headers.get(VOTER_ID_HEADER) or "").strip()
    if not raw.isdecimal():
        raise Unauthorized()
    return int(raw)


def _admin_id(data=None):
    value = (data or {}).get("admin_id") or request.args.get("admin_id") or DEFAULT_ADMIN_ID
    return str(value).strip() or DEFAULT_ADMIN_ID


def _optional_rating(data, key):
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be between 1 and 5")
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be between 1 and 5")
    if not 1 <= value <= 5:
        raise ValidationError(f"{key} must be between 1 and 5")
    return value


def _candidate_fields(data, partial=False):
    fields = {}
    for key, column in (("name", "name"), ("position", "position"), ("gender", "gender"),
                        ("manifesto", "manifesto"), ("photoUrl", "photo_url")):
        if key in data:
            value = data.get(key)
            fields[column] = value.strip() if isinstance(value, str) else value
    if "isActive" in data:
        fields["is_active"] = bool(data.get("isActive"))

    required = ("name", "position") if not partial else [k for k in ("name", "position") if k in fields]
    for key in required:
        if not isinstance(fields.get(key), str) or not fields[key]:
            raise ValidationError("Name and Position are required")
    return fields


def _parse_date(value, field, with_time=False):
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    try:
        if with_time:
            return datetime.fromisoformat(value)
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)")


def _handle_voting_error(exc):
    if isinstance(exc, StorageUnavailable):
        logger.error("Storage unavailable while handling %s %s", request.method, request.path)
    return jsonify(exc.to_dict()), exc.status_code


@api.route("/health")
def health():
    return jsonify({"status": "ok", "message": "Server running"})


@api.route("/auth/register", methods=["POST"])
def register():
    voter = register_voter(_store(), _json_body())
    return jsonify({"message": "Registration successful! You can now login.", "voterId": voter.id}), 201


@api.route("/auth/login", methods=["POST"])
def login():
    data = _json_body()
    voter = authenticate(_store(), data.get("email"), data.get("password") or "")
    return jsonify(
        {
            "message": "Login successful",
            "voterId": voter.id,
            "email": voter.email,
            "fullName": voter.full_name,
            "role": role_for(voter, _config().admin_email),
            "hasVoted": voter.has_voted,
        }
    )


@api.route("/voters/me", methods=["GET"])
def voter_profile():
    voter_id = _current_voter_id()
    voter = _store().get_voter(voter_id)
    if not voter:
        raise NotFound("Voter not found")
    return jsonify(voter.public_dict())


@api.route("/settings/profile", methods=["PUT"])
def update_voter_profile():
    voter = update_profile(_store(), _current_voter_id(), _json_body())
    return jsonify({"message": "Profile updated successfully", "profile": voter.public_dict()})


@api.route("/settings/election-date", methods=["GET"])
def get_election_date():
    return jsonify({"electionDate": _store().get_setting(ELECTION_DATE_KEY)})


@api.route("/settings/election-date", methods=["PUT"])
def set_election_date():
    data = _json_body()
    election_date = _parse_date(data.get("electionDate"), "electionDate")
    if election_date is None:
        raise ValidationError("Election date (YYYY-MM-DD) is required")
    store = _store()
    previous = store.get_setting(ELECTION_DATE_KEY)
    store.set_setting(ELECTION_DATE_KEY, election_date.isoformat())
    log_admin_event(
        store,
        admin_id=_admin_id(data),
        event_type="ELECTION_DATE_SET",
        event_details={"from": previous, "to": election_date.isoformat()},
        risk_level="MEDIUM" if previous else "LOW",
    )
    return jsonify({"message": "Election date updated successfully", "electionDate": election_date.isoformat()})


@api.route("/announcements", methods=["GET"])
def list_announcements():
    return jsonify(_store().list_announcements())


@api.route("/announcements", methods=["POST"])
def post_announcement():
    data = _json_body()
    candidate_id = data.get("candidateId")
    if isinstance(candidate_id, str) and candidate_id.strip().isdecimal():
        candidate_id = int(candidate_id.strip())
    if not isinstance(candidate_id, int) or isinstance(candidate_id, bool):
        raise ValidationError("candidateId is required")
    title, message = data.get("title"), data.get("message")
    title = title.strip() if isinstance(title, str) else ""
    message = message.strip() if isinstance(message, str) else ""
    if not title or not message:
        raise ValidationError("Title and message are required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError("Title is too long")

    store = _store()
    announcement = store.add_announcement(
        candidate_id, title, message, event_date=_parse_date(data.get("eventDate"), "eventDate", with_time=True)
    )
    log_admin_event(
        store,
        admin_id=_admin_id(data),
        event_type="ANNOUNCEMENT_POSTED",
        event_details={"announcement_id": announcement.id, "candidate_id": candidate_id},
    )
    return jsonify({"message": "Announcement posted", "announcement": announcement.to_dict()}), 201


@api.route("/candidates", methods=["GET"])
def get_candidates():
    return jsonify([c.to_dict() for c in _store().list_candidates()])


@api.route("/candidates", methods=["POST"])
def add_candidate():
    data = _json_body()
    fields = _candidate_fields(data)
    store = _store()
    candidate = store.add_candidate(**fields)
    log_admin_event(
        store,
        admin_id=_admin_id(data),
        event_type="CANDIDATE_ADDED",
        event_details={"candidate_id": candidate.id, "name": candidate.name, "position": candidate.position},
        risk_level=ballot_change_risk(store),
    )
    return jsonify({"message": "Candidate added", "candidate": candidate.to_dict()}), 201


@api.route("/candidates/<int:candidate_id>", methods=["PUT"])
def update_candidate(candidate_id):
    data = _json_body()
    fields = _candidate_fields(data, partial=True)
    store = _store()
    candidate = store.update_candidate(candidate_id, **fields)
    log_admin_event(
        store,
        admin_id=_admin_id(data),
        event_type="CANDIDATE_UPDATED",
        event_details={"candidate_id": candidate_id, "fields": sorted(fields)},
        risk_level=ballot_change_risk(store),
    )
    return jsonify({"message": "Candidate updated successfully", "candidate": candidate.to_dict()})


@api.route("/candidates/<int:candidate_id>", methods=["DELETE"])
def delete_candidate(candidate_id):
    store = _store()
    store.delete_candidate(candidate_id)
    log_admin_event(
        store,
        admin_id=_admin_id(_json_body()),
        event_type="CANDIDATE_DELETED",
        event_details={"candidate_id": candidate_id},
        risk_level=ballot_change_risk(store, base="MEDIUM"),
    )
    return jsonify({"message": "Candidate deleted successfully"})


@api.route("/votes", methods=["POST"])
def cast_votes():
    voter_id = _current_voter_id()
    selections = selections_from_votes(_json_body().get("votes"))
    entries = submit_ballot(_store(), voter_id, selections)
    return jsonify({"message": "Votes recorded successfully", "votes": [e.to_dict() for e in entries]})


@api.route("/votes/results", methods=["GET"])
def results():
    try:
        return jsonify(compute_results(_store()))
    except VotingError:
        raise
    except Exception:
        logger.exception("Error computing results")
        return jsonify({"error": "Failed to fetch results"}), 500


@api.route("/votes/summary", methods=["GET"])
def results_summary():
    published, published_at = _store().get_results_status()
    return jsonify(
        {
            "published": published,
            "publishedAt": published_at.isoformat() if published_at else None,
            "positions": summarize_results(compute_results(_store())),
        }
    )


@api.route("/admin/results-status", methods=["GET"])
def results_status():
    published, published_at = _store().get_results_status()
    return jsonify({"published": published, "publishedAt": published_at.isoformat() if published_at else None})


def _set_publication(publish):
    data = _json_body()
    store = _store()
    currently_published, _ = store.get_results_status()
    risk_level = "LOW"
    event_type = "RESULTS_PUBLISHED" if publish else "RESULTS_UNPUBLISHED"
    if currently_published and not publish:
        risk_level = "CRITICAL"
        event_type = "RESULTS_UNPUBLISHED_AFTER_PUBLICATION"
    published_at = store.set_results_published(publish)
    log_admin_event(
        store,
        admin_id=_admin_id(data),
        event_type=event_type,
        event_details={"from_published": currently_published, "to_published": publish},
        risk_level=risk_level,
    )
    return published_at


@api.route("/admin/publish-results", methods=["POST"])
def publish_results():
    published_at = _set_publication(True)
    return jsonify(
        {
            "published": True,
            "publishedAt": published_at.isoformat() if published_at else None,
            "message": "Results published successfully",
        }
    )


@api.route("/admin/unpublish-results", methods=["POST"])
def unpublish_results():
    _set_publication(False)
    return jsonify({"published": False, "message": "Results have been unpublished / hidden"})


@api.route("/admin/stats", methods=["GET"])
def stats():
    return jsonify(reports.admin_stats(_store(), _config().admin_email))


@api.route("/admin/report/turnout", methods=["GET"])
def turnout_report():
    body = reports.turnout_csv(reports.admin_stats(_store(), _config().admin_email))
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": 'attachment; filename="turnout_report.csv"'},
    )


@api.route("/admin/report/candidates", methods=["GET"])
def candidates_report():
    store = _store()
    body = reports.candidates_csv(compute_results(store), store.list_candidates(only_active=False))
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": 'attachment; filename="candidate_report.csv"'},
    )


@api.route("/admin/audit-log", methods=["GET"])
def audit_log():
    limit = request.args.get("limit", 100, type=int)
    if limit <= 0:
        raise ValidationError("limit must be positive")
    events = _store().list_admin_events(limit=min(limit, 1000))
    for event in events:
        event["verified"] = verify_event_hash(event)
    return jsonify(events)


@api.route("/feedback", methods=["POST"])
def submit_feedback():
    voter_id = _current_voter_id()
    data = _json_body()
    text = (data.get("message") or data.get("feedback") or "").strip()
    if not text:
        raise ValidationError("Feedback message is required")
    if len(text) > 1000:
        raise ValidationError("Feedback message is too long")

    candidate_satisfaction = _optional_rating(data, "candidateSatisfaction")
    rating = _optional_rating(data, "rating")
    registered = data.get("isRegisteredVoter")
    if registered in ("yes", "no"):
        registered = registered == "yes"
    elif not isinstance(registered, bool):
        registered = None
    motivation = data.get("motivation") or None
    if motivation is not None and motivation not in MOTIVATIONS:
        raise ValidationError("motivation must be one of: more, less, same")

    feedback = _store().add_feedback(
        voter_id,
        text,
        rating=rating if rating is not None else candidate_satisfaction,
        is_registered_voter=registered,
        candidate_satisfaction=candidate_satisfaction,
        process_trust=_optional_rating(data, "processTrust"),
        motivation=motivation,
    )
    return jsonify({"message": "Feedback submitted successfully", "feedbackId": feedback.id}), 201


@api.route("/feedback/me", methods=["GET"])
def my_feedback():
    feedback = _store().get_feedback_for_voter(_current_voter_id())
    if not feedback:
        return jsonify({"hasFeedback": False})
    return jsonify({"hasFeedback": True, "feedback": feedback.to_dict()})


@api.route("/feedback", methods=["GET"])
def list_feedback():
    return jsonify(_store().list_feedback())


def create_app(config=None, store=None):
    config = config or Config.from_env()
    app = Flask(__name__)
    app.config["VOTING"] = config
    CORS(app, origins=config.cors_origins, supports_credentials=True)

    if store is None:
        database = Database(
            config.database_url,
            minconn=config.db_pool_min,
            maxconn=config.db_pool_max,
            sslmode=config.db_sslmode,
            connect_timeout=config.db_connect_timeout,
        )
        store = PostgresStore(database, lock_timeout_ms=config.db_lock_timeout_ms)
    app.extensions["ballot_store"] = store

    app.register_blueprint(api)
    app.register_error_handler(VotingError, _handle_voting_error)
    return app


if __name__ == "__main__":
    config = Config.from_env()
    configure_logging(config.log_level)
    app = create_app(config)
    ensure_schema(app.extensions["ballot_store"].database)
    app.run(host="0.0.0.0", port=config.port)
