"""cx_dashboard.validate

Required-field contracts per entity.  Each validator either returns the
typed entity or raises ValidationError listing every problem found; the
caller decides what to do with a rejected fragment (the batch importer
records it and moves on).
"""

from __future__ import annotations

from typing import Any, Mapping

from cx_dashboard.models import Activity, Contact, Survey, utcnow
from cx_dashboard.shared import ValidationError


def _missing(fragment: Mapping[str, Any], keys: tuple[str, ...]) -> list[str]:
    problems = []
    for key in keys:
        value = fragment.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            problems.append(f"missing_{key}")
    return problems


def validate_contact(fragment: Mapping[str, Any]) -> Contact:
    problems = _missing(fragment, ("id", "directory"))
    directory_fields = fragment.get("directory_fields")
    if directory_fields is None:
        directory_fields = {}
    elif not isinstance(directory_fields, dict):
        problems.append("directory_fields_not_object")
    if problems:
        raise ValidationError("contact", fragment.get("id"), problems)
    return Contact(
        id=fragment["id"],
        directory=fragment["directory"],
        directory_fields=directory_fields,
    )


def validate_activity(fragment: Mapping[str, Any]) -> Activity:
    problems = _missing(fragment, ("id", "contact_id", "activity"))
    if problems:
        raise ValidationError("activity", fragment.get("id"), problems)
    return Activity(
        id=fragment["id"],
        contact_id=fragment["contact_id"],
        activity=fragment["activity"],
        activity_fields=fragment.get("activity_fields"),
        activity_upload_date=fragment.get("activity_upload_date"),
    )


def validate_survey(
    fragment: Mapping[str, Any],
    activity_owners: Mapping[str, str] | None = None,
) -> Survey:
    """Validate a survey fragment.

    activity_owners maps accepted activity ids to their contact id; when the
    survey references an activity, that activity must belong to the same
    contact.  sent_at defaults to now.
    """
    problems = _missing(fragment, ("id", "contact_id", "survey_title", "channel", "status"))
    activity_id = fragment.get("activity_id")
    if activity_id is not None and activity_owners is not None:
        owner = activity_owners.get(activity_id)
        if owner is None:
            problems.append("unknown_activity_id")
        elif owner != fragment.get("contact_id"):
            problems.append("activity_belongs_to_other_contact")
    if problems:
        raise ValidationError("survey", fragment.get("id"), problems)
    return Survey(
        id=fragment["id"],
        contact_id=fragment["contact_id"],
        activity_id=activity_id,
        survey_title=fragment["survey_title"],
        feedback_recipient=fragment.get("feedback_recipient"),
        channel=fragment["channel"],
        sent_at=fragment.get("sent_at") or utcnow(),
        language=fragment.get("language") or "English",
        status=fragment["status"],
        participation_method=fragment.get("participation_method"),
        participation_date=fragment.get("participation_date"),
        survey_response_link=fragment.get("survey_response_link"),
        metric_scores=fragment.get("metric_scores"),
        driver_scores=fragment.get("driver_scores"),
        open_ended_sentiment=fragment.get("open_ended_sentiment"),
        open_ended_themes=fragment.get("open_ended_themes"),
        open_ended_emotions=fragment.get("open_ended_emotions"),
    )
