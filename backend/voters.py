import logging
import re

from werkzeug.security import check_password_hash, generate_password_hash

from errors import Unauthorized, ValidationError

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
PASSWORD_COMPLEXITY_MSG = "Password must be at least 8 characters and include uppercase, lowercase, number, and special character."
EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
PHONE_RE = re.compile(r"^\+?\d{10,15}$")


def normalize_email(email):
    return email.strip().lower() if isinstance(email, str) else ""


def is_strong_password(password):
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return False
    has_upper = any(ch.isupper() for ch in password)
    has_lower = any(ch.islower() for ch in password)
    has_digit = any(ch.isdigit() for ch in password)
    has_special = any(not ch.isalnum() for ch in password)
    return has_upper and has_lower and has_digit and has_special


def _clean(value):
    return value.strip() if isinstance(value, str) else ""


def register_voter(store, data):
    full_name = _clean(data.get("fullName"))
    email = normalize_email(data.get("email"))
    student_id = _clean(data.get("studentId"))
    password = data.get("password") or ""
    phone = _clean(data.get("phone")).replace(" ", "") or None
    gender = _clean(data.get("gender")) or None

    if not full_name or not email or not student_id or not password:
        raise ValidationError("All fields are required")
    if not EMAIL_RE.fullmatch(email):
        raise ValidationError("Invalid email address")
    if phone and not PHONE_RE.match(phone):
        raise ValidationError("Invalid phone number")
    if not is_strong_password(password):
        raise ValidationError(PASSWORD_COMPLEXITY_MSG)

    voter = store.create_voter(
        full_name=full_name,
        email=email,
        student_id=student_id,
        password_hash=generate_password_hash(password),
        phone=phone,
        gender=gender,
    )
    logger.info("Registered voter %s", voter.id)
    return voter


def update_profile(store, voter_id, data):
    full_name = _clean(data.get("fullName"))
    email = normalize_email(data.get("email"))
    phone = _clean(data.get("phone")).replace(" ", "") or None

    if not full_name or not email:
        raise ValidationError("Full name and email are required")
    if not EMAIL_RE.fullmatch(email):
        raise ValidationError("Invalid email address")
    if phone and not PHONE_RE.match(phone):
        raise ValidationError("Invalid phone number")

    voter = store.update_voter_profile(voter_id, full_name=full_name, email=email, phone=phone)
    logger.info("Updated profile of voter %s", voter_id)
    return voter


def authenticate(store, email, password):
    email = normalize_email(email)
    if not email or not password:
        raise ValidationError("Email and password are required")
    voter = store.get_voter_by_email(email)
    if not voter or not voter.password_hash or not check_password_hash(voter.password_hash, password):
        raise Unauthorized("Invalid credentials")
    return voter


def role_for(voter, admin_email):
    return "admin" if voter.email == admin_email else "voter"
