"""Worker discovery: distance and skill scoring of open tasks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

EARTH_RADIUS_KM = 6371.0

# Distance used when either side has no coordinates. Such tasks are
# ranked last by distance but still listed.
UNKNOWN_DISTANCE_KM = 9999.0

SKILL_MATCH_BONUS = 10.0


def normalize_skills(skills: Iterable[str] | str | None) -> frozenset[str]:
    """Normalize skill tags to a lowercase set. Accepts a comma-separated string."""
    if skills is None:
        return frozenset()
    items = skills.split(",") if isinstance(skills, str) else skills
    return frozenset(s.strip().lower() for s in items if s and s.strip())


@dataclass(frozen=True)
class WorkerProfile:
    """Immutable snapshot of a worker used for one matching call."""

    worker_id: str
    lat: float | None
    lng: float | None
    skills: frozenset[str]

    @classmethod
    def create(
        cls,
        worker_id: str,
        lat: float | None,
        lng: float | None,
        skills: Iterable[str] | str | None,
    ) -> WorkerProfile:
        return cls(worker_id=worker_id, lat=lat, lng=lng, skills=normalize_skills(skills))


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def task_distance_km(task: dict[str, Any], worker: WorkerProfile) -> float:
    """Distance from worker to task, or the sentinel if either lacks coordinates."""
    task_lat = task.get("lat")
    task_lng = task.get("lng")
    if worker.lat is None or worker.lng is None or task_lat is None or task_lng is None:
        return UNKNOWN_DISTANCE_KM
    return haversine_km(worker.lat, worker.lng, float(task_lat), float(task_lng))


def skill_matches(task: dict[str, Any], worker: WorkerProfile) -> bool:
    category = task.get("category")
    if not category or not worker.skills:
        return False
    return str(category).strip().lower() in worker.skills


def score_task(task: dict[str, Any], worker: WorkerProfile) -> tuple[float, float]:
    """Return (distance_km, score) for one task."""
    distance = task_distance_km(task, worker)
    score = -distance
    if skill_matches(task, worker):
        score += SKILL_MATCH_BONUS
    return distance, score


def rank_tasks(tasks: Iterable[dict[str, Any]], worker: WorkerProfile) -> list[dict[str, Any]]:
    """
    Annotate tasks with distance_km and score, best first.

    Pure over its inputs: the given task dicts are not modified. The sort
    is stable, so equal scores keep their enumeration order.
    """
    annotated: list[dict[str, Any]] = []
    for task in tasks:
        distance, score = score_task(task, worker)
        annotated.append({**task, "distance_km": distance, "score": score})
    return sorted(annotated, key=lambda item: item["score"], reverse=True)
