from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from ..config import MAX_AGE, MIN_AGE


@dataclass
class Profile:
    user_id: str
    gender: str
    birth_date: date
    class_year: int
    school: str
    majors: list[str] = field(default_factory=list)
    interests: list[str] = field(default_factory=list)
    clubs: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Profile":
        birth = row["birth_date"]
        if isinstance(birth, datetime):
            birth = birth.date()
        elif isinstance(birth, str):
            birth = date.fromisoformat(birth[:10])
        return cls(
            user_id=str(row["user_id"]),
            gender=str(row.get("gender") or ""),
            birth_date=birth,
            class_year=int(row["class_year"]),
            school=str(row.get("school") or ""),
            majors=_str_list(row.get("majors")),
            interests=_str_list(row.get("interests")),
            clubs=_str_list(row.get("clubs")),
        )


@dataclass
class Preference:
    user_id: str
    age_min: int = MIN_AGE
    age_max: int = MAX_AGE
    genders: list[str] = field(default_factory=list)
    years: list[str] = field(default_factory=list)
    schools: list[str] = field(default_factory=list)
    majors: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Preference":
        return cls(
            user_id=str(row["user_id"]),
            age_min=int(row.get("age_min") if row.get("age_min") is not None else MIN_AGE),
            age_max=int(row.get("age_max") if row.get("age_max") is not None else MAX_AGE),
            genders=_str_list(row.get("genders")),
            years=_str_list(row.get("years")),
            schools=_str_list(row.get("schools")),
            majors=_str_list(row.get("majors")),
        )


def _str_list(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    return [str(v) for v in values if v is not None and str(v).strip()]


def calculate_age(birth_date: date, today: date) -> int:
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def year_label(class_year: int, today: date) -> str:
    years_until_grad = class_year - today.year
    if years_until_grad >= 4:
        return "Freshman"
    if years_until_grad == 3:
        return "Sophomore"
    if years_until_grad == 2:
        return "Junior"
    if years_until_grad in (0, 1):
        return "Senior"
    return "Graduate"


def satisfies(profile: Profile, pref: Preference, today: date) -> bool:
    """True when ``profile`` passes every axis of ``pref``.

    An empty list on an axis means no restriction there. A non-empty list
    that the profile does not intersect fails closed.
    """
    if pref.genders and profile.gender not in pref.genders:
        return False

    age = calculate_age(profile.birth_date, today)
    if age < pref.age_min or age > pref.age_max:
        return False

    if pref.years and year_label(profile.class_year, today) not in pref.years:
        return False

    if pref.schools and profile.school not in pref.schools:
        return False

    if pref.majors and not set(profile.majors) & set(pref.majors):
        return False

    return True


def is_mutually_eligible(
    profile_a: Profile,
    pref_a: Preference,
    profile_b: Profile,
    pref_b: Preference,
    today: date,
) -> bool:
    return satisfies(profile_b, pref_a, today) and satisfies(profile_a, pref_b, today)


def _overlap(a: list[str], b: list[str]) -> int:
    return len(set(a) & set(b))


def compute_compatibility(profile_a: Profile, profile_b: Profile, today: date) -> dict[str, Any]:
    age_gap = abs(calculate_age(profile_a.birth_date, today) - calculate_age(profile_b.birth_date, today))
    components = {
        "school": 20 if profile_a.school == profile_b.school else 0,
        "majors": min(15, 5 * _overlap(profile_a.majors, profile_b.majors)),
        "class_year": max(0, 15 - 3 * abs(profile_a.class_year - profile_b.class_year)),
        "age": max(0, 15 - 2 * age_gap),
        "interests": min(20, 4 * _overlap(profile_a.interests, profile_b.interests)),
        "clubs": min(15, 5 * _overlap(profile_a.clubs, profile_b.clubs)),
    }
    return {
        "score_total": sum(components.values()),
        "score_breakdown": components,
    }
