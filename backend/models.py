from dataclasses import dataclass
from datetime import datetime


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass(frozen=True)
class Voter:
    id: int
    full_name: str
    email: str
    student_id: str
    password_hash: str
    has_voted: bool = False
    phone: str = None
    gender: str = None
    created_at: datetime = None

    def public_dict(self):
        return {
            "voterId": self.id,
            "fullName": self.full_name,
            "email": self.email,
            "studentId": self.student_id,
            "phone": self.phone,
            "gender": self.gender,
            "hasVoted": self.has_voted,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Candidate:
    id: int
    name: str
    position: str
    gender: str = None
    manifesto: str = None
    photo_url: str = None
    is_active: bool = True

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "position": self.position,
            "gender": self.gender,
            "manifesto": self.manifesto,
            "photoUrl": self.photo_url,
            "isActive": self.is_active,
        }


@dataclass(frozen=True)
class BallotEntry:
    position: str
    candidate_id: int

    def to_dict(self):
        return {"position": self.position, "candidateId": self.candidate_id}


@dataclass(frozen=True)
class TallyRow:
    candidate_id: int
    name: str
    position: str
    vote_count: int


@dataclass(frozen=True)
class Feedback:
    id: int
    voter_id: int
    message: str
    rating: int = None
    is_registered_voter: bool = None
    candidate_satisfaction: int = None
    process_trust: int = None
    motivation: str = None
    created_at: datetime = None

    def to_dict(self):
        return {
            "feedbackId": self.id,
            "voterId": self.voter_id,
            "message": self.message,
            "rating": self.rating,
            "isRegisteredVoter": self.is_registered_voter,
            "candidateSatisfaction": self.candidate_satisfaction,
            "processTrust": self.process_trust,
            "motivation": self.motivation,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Announcement:
    id: int
    candidate_id: int
    title: str
    message: str
    event_date: datetime = None
    created_at: datetime = None

    def to_dict(self):
        return {
            "id": self.id,
            "candidateId": self.candidate_id,
            "title": self.title,
            "message": self.message,
            "eventDate": _iso(self.event_date),
            "createdAt": _iso(self.created_at),
        }
