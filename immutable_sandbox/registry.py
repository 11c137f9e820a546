"""
Experiment Registry.

Owns the lifecycle state machine:

    CREATED -> IN_PROGRESS -> COMPLETED (terminal)

Every transition is checked against the stored status and applied with
one conditional UPDATE in ``RegistryDatabase``; a transition that is not
allowed raises before any filesystem side effect.
"""

import logging
import os
import time
import uuid
from pathlib import Path
from typing import List, Optional, Union

from .db import RegistryDatabase
from .errors import AlreadyFinalized, DuplicateLocation, InvalidTransition, NotFound
from .models import Experiment, ExperimentStatus
from .util import utc_iso_millis, utc_now

logger = logging.getLogger(__name__)


def normalize_location(location: Union[str, Path]) -> str:
    """Absolute, normalized path; the registry's uniqueness key."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(location))))


class ExperimentRegistry:
    """
    State machine over the persistent experiment store.

    Finalization is split into ``claim_finalize`` and ``complete`` so the
    caller can run the manifest pipeline while holding a lease that keeps
    a concurrent finalize of the same record out.
    """

    def __init__(self, db: RegistryDatabase, lease_seconds: int = 900):
        self.db = db
        self.lease_seconds = lease_seconds

    def register(self, name: str, location: Union[str, Path]) -> Experiment:
        """
        Insert a CREATED record.

        Raises:
            DuplicateLocation: the location is already registered
        """
        location = normalize_location(location)
        exp_id = str(uuid.uuid4())
        if not self.db.insert_experiment(exp_id, name, location, utc_iso_millis(utc_now())):
            raise DuplicateLocation(f"Location already registered: {location}", step="register")
        return self.get(exp_id)

    def unregister(self, exp_id: str) -> None:
        """Roll back a registration whose scaffolding failed."""
        self.db.delete_experiment(exp_id, time.time())

    def get(self, exp_id: str) -> Experiment:
        row = self.db.get_experiment(exp_id)
        if row is None:
            raise NotFound(f"No experiment with id {exp_id}", experiment_id=exp_id)
        return Experiment.from_row(row)

    def find_by_location(self, location: Union[str, Path]) -> Optional[Experiment]:
        row = self.db.get_experiment_by_location(normalize_location(location))
        return Experiment.from_row(row) if row is not None else None

    def list(self) -> List[Experiment]:
        return [Experiment.from_row(row) for row in self.db.list_experiments()]

    def open(self, exp_id: str) -> Experiment:
        """
        CREATED|IN_PROGRESS -> IN_PROGRESS. Idempotent.

        Raises:
            NotFound: unknown id
            InvalidTransition: the experiment is COMPLETED or being finalized
        """
        current = self.get(exp_id)
        if current.status != ExperimentStatus.COMPLETED and \
                self.db.mark_opened(exp_id, utc_iso_millis(utc_now()), time.time()):
            return self.get(exp_id)
        if self.get(exp_id).status == ExperimentStatus.COMPLETED:
            raise InvalidTransition(
                f"Experiment {exp_id} is COMPLETED and cannot be opened for write",
                step="open", experiment_id=exp_id,
            )
        raise InvalidTransition(
            f"Experiment {exp_id} is being finalized and cannot be opened for write",
            step="open", experiment_id=exp_id,
        )

    def claim_finalize(self, exp_id: str) -> str:
        """
        Take the finalize lease; CREATED implicitly enters IN_PROGRESS.

        Returns:
            The lease token to pass to ``complete`` / ``release``

        Raises:
            NotFound: unknown id
            AlreadyFinalized: the experiment is COMPLETED
            InvalidTransition: another finalize holds a live lease
        """
        current = self.get(exp_id)
        if current.status == ExperimentStatus.COMPLETED:
            raise AlreadyFinalized(
                f"Experiment {exp_id} was already finalized at {current.finalized_at}",
                step="claim", experiment_id=exp_id,
            )
        token = uuid.uuid4().hex
        now = time.time()
        if self.db.claim_finalize(exp_id, token, now, now + self.lease_seconds):
            return token

        current = self.get(exp_id)
        if current.status == ExperimentStatus.COMPLETED:
            raise AlreadyFinalized(
                f"Experiment {exp_id} was already finalized at {current.finalized_at}",
                step="claim", experiment_id=exp_id,
            )
        raise InvalidTransition("finalize already in progress", step="claim", experiment_id=exp_id)

    def release(self, exp_id: str, token: str, restore_status: Optional[ExperimentStatus] = None) -> None:
        status = restore_status.value if restore_status is not None else None
        if not self.db.release_finalize(exp_id, token, status):
            logger.warning("Finalize lease for %s was already released or taken over", exp_id)

    def complete(self, exp_id: str, token: str, manifest_path: str, timestamped: bool) -> Experiment:
        """
        IN_PROGRESS -> COMPLETED, recording the manifest path once.

        Raises:
            InvalidTransition: the lease was lost (expired and re-claimed)
        """
        finalized_at = utc_iso_millis(utc_now())
        if not self.db.complete_experiment(exp_id, token, finalized_at, manifest_path, timestamped):
            raise InvalidTransition(
                f"Finalize lease for {exp_id} lost before completion",
                step="complete", experiment_id=exp_id,
            )
        return self.get(exp_id)

    def remove(self, exp_id: str) -> Experiment:
        """
        Delete the record only; the experiment's files are untouched.

        Raises:
            NotFound: unknown id
            InvalidTransition: a finalize is in flight
        """
        current = self.get(exp_id)
        if not self.db.delete_experiment(exp_id, time.time()):
            raise InvalidTransition(
                f"Experiment {exp_id} has a finalize in flight and cannot be removed",
                step="remove", experiment_id=exp_id,
            )
        return current
