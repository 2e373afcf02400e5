"""cx_dashboard.identity

Batch-scoped identity resolution.

One IdentityResolver is created per import call and discarded afterwards:

  contacts    keyed by source contact id; first occurrence wins, later
              occurrences only contribute children.  Rows without an id get
              a synthesized one, so two id-less rows never merge.
  activities  always a fresh id (a contact may have any number of them).
  surveys     keyed by their declared id; the importer keeps the latest
              accepted survey per id.
"""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from typing import Any

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _suffix(length: int = 9) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=length))


def new_contact_id() -> str:
    return f"contact_{_epoch_ms()}_{_suffix()}"


def new_activity_id() -> str:
    return f"activity_{_epoch_ms()}_{_suffix()}"


def new_note_id() -> str:
    return f"note_{_epoch_ms()}"


@dataclass
class ContactResolution:
    contact_id: str
    # first occurrence of the contact in this batch
    is_new: bool


@dataclass
class IdentityResolver:
    contact_ids: set[str] = field(default_factory=set)
    survey_ids: set[str] = field(default_factory=set)

    def resolve_contact(self, fragment: dict[str, Any]) -> ContactResolution:
        """Assign fragment['id'] and register the contact on first sight.

        The fragment is mutated in place (its id is filled in when absent).
        """
        contact_id = fragment.get("id")
        if not contact_id:
            contact_id = new_contact_id()
            fragment["id"] = contact_id

        if contact_id in self.contact_ids:
            return ContactResolution(contact_id, is_new=False)

        self.contact_ids.add(contact_id)
        return ContactResolution(contact_id, is_new=True)

    def resolve_activity(self, fragment: dict[str, Any]) -> str:
        fragment["id"] = new_activity_id()
        return fragment["id"]

    def resolve_survey(self, fragment: dict[str, Any]) -> bool:
        """Register a survey id; True when an earlier record in the batch used it."""
        survey_id = fragment["id"]
        repeated = survey_id in self.survey_ids
        self.survey_ids.add(survey_id)
        return repeated
