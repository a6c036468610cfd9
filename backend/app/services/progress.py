"""Residency progress: the fixed step catalog and per-user step state.

The overall status of a progress record is always derived from its step
statuses by ``derive_overall_status``. The ``status`` column on
``ResidencyProgress`` only caches that value and is rewritten on every
step write, so unblocking a step also clears a ``blocked`` overall status.
"""

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from sqlmodel import Session, col, select

from app.core.retry import with_retry
from app.models import (
    ProgressStatus,
    ResidencyProgress,
    ResidencyProgressPublic,
    ResidencyStep,
    ResidencyStepProgress,
    ResidencyStepPublic,
    StepStatus,
    get_datetime_utc,
)
from app.services.exceptions import RecordNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepDefinition:
    order_number: int
    title: str
    description: str
    estimated_time: str
    requirements: str


STEP_CATALOG: tuple[StepDefinition, ...] = (
    StepDefinition(
        1,
        "Document Upload",
        "Initial submission and review of required documents in digital format",
        "1-2 weeks",
        "Passport, birth certificate and criminal record certificate",
    ),
    StepDefinition(
        2,
        "Translation and Notarization",
        "Official translation to Spanish and notarization of foreign documents",
        "1-2 weeks",
        "Apostilled originals of every foreign document",
    ),
    StepDefinition(
        3,
        "Immigration Appointment",
        "Physical document submission and interview at Immigration Office",
        "1 day",
        "Original documents and passport in person",
    ),
    StepDefinition(
        4,
        "Residency Issuance",
        "Processing and follow-up of application at Immigration Office",
        "2-3 months",
        "Approved application at the Immigration Office",
    ),
    StepDefinition(
        5,
        "ID Card Processing",
        "Processing of Paraguayan ID at the Identification Department",
        "2-4 weeks",
        "Residency card and passport",
    ),
    StepDefinition(
        6,
        "ID Card Reception",
        "Physical delivery of Paraguayan ID",
        "1 day",
        "Pickup receipt from the Identification Department",
    ),
    StepDefinition(
        7,
        "Tax ID Processing",
        "Registration with Treasury to obtain Tax ID",
        "1-2 weeks",
        "Paraguayan ID and proof of address",
    ),
    StepDefinition(
        8,
        "Tax ID Reception",
        "Delivery of official Tax ID document and process completion",
        "1 day",
        "Tax registration confirmation",
    ),
)


def derive_overall_status(statuses: Iterable[StepStatus | str]) -> ProgressStatus:
    values = [StepStatus(status) for status in statuses]
    if not values:
        return ProgressStatus.IN_PROGRESS
    if any(status == StepStatus.BLOCKED for status in values):
        return ProgressStatus.BLOCKED
    if all(status == StepStatus.COMPLETED for status in values):
        return ProgressStatus.COMPLETED
    return ProgressStatus.IN_PROGRESS


def seed_step_catalog(session: Session) -> list[ResidencyStep]:
    """Insert any catalog step missing from the database. Safe to run repeatedly."""
    existing = {
        step.order_number: step for step in session.exec(select(ResidencyStep)).all()
    }
    for definition in STEP_CATALOG:
        if definition.order_number in existing:
            continue
        step = ResidencyStep(
            order_number=definition.order_number,
            title=definition.title,
            description=definition.description,
            estimated_time=definition.estimated_time,
            requirements=definition.requirements,
        )
        session.add(step)
        existing[definition.order_number] = step
    session.commit()
    return [existing[order] for order in sorted(existing)]


def _load_steps(
    session: Session, progress_id: uuid.UUID
) -> list[tuple[ResidencyStep, ResidencyStepProgress]]:
    statement = (
        select(ResidencyStep, ResidencyStepProgress)
        .join(ResidencyStepProgress, ResidencyStepProgress.step_id == ResidencyStep.id)
        .where(ResidencyStepProgress.progress_id == progress_id)
        .order_by(col(ResidencyStep.order_number))
    )
    return list(session.exec(statement).all())


def _to_public(
    progress: ResidencyProgress,
    rows: list[tuple[ResidencyStep, ResidencyStepProgress]],
) -> ResidencyProgressPublic:
    steps = [
        ResidencyStepPublic(
            id=step.id,
            order=step.order_number,
            title=step.title,
            description=step.description,
            estimated_time=step.estimated_time,
            requirements=step.requirements,
            status=StepStatus(step_progress.status),
            notes=step_progress.notes,
            completed_at=step_progress.completed_at,
        )
        for step, step_progress in rows
    ]
    return ResidencyProgressPublic(
        id=progress.id,
        user_id=progress.user_id,
        status=derive_overall_status(step.status for step in steps),
        steps=steps,
        created_at=progress.created_at,
        updated_at=progress.updated_at,
    )


def _get_record(session: Session, user_id: uuid.UUID) -> ResidencyProgress | None:
    return session.exec(
        select(ResidencyProgress).where(ResidencyProgress.user_id == user_id)
    ).first()


@with_retry()
def get_progress(*, session: Session, user_id: uuid.UUID) -> ResidencyProgressPublic | None:
    """Return the user's progress with steps in catalog order, or None if not started."""
    progress = _get_record(session, user_id)
    if progress is None:
        return None
    return _to_public(progress, _load_steps(session, progress.id))


@with_retry()
def provision_progress(*, session: Session, user_id: uuid.UUID) -> ResidencyProgressPublic:
    """Create the user's progress record with every catalog step pending.

    Returns the existing record unchanged if the user already has one.
    """
    progress = _get_record(session, user_id)
    if progress is not None:
        return _to_public(progress, _load_steps(session, progress.id))

    steps = seed_step_catalog(session)
    progress = ResidencyProgress(user_id=user_id)
    session.add(progress)
    session.flush()
    for step in steps:
        session.add(ResidencyStepProgress(progress_id=progress.id, step_id=step.id))
    session.commit()
    session.refresh(progress)
    logger.info("Provisioned residency progress %s for user %s", progress.id, user_id)
    return _to_public(progress, _load_steps(session, progress.id))


@with_retry()
def update_step(
    *,
    session: Session,
    user_id: uuid.UUID,
    step_id: uuid.UUID,
    status: StepStatus,
    notes: str | None,
) -> ResidencyProgressPublic:
    """Set a step to any state. Completion is stamped or cleared to match."""
    progress = _get_record(session, user_id)
    if progress is None:
        raise RecordNotFoundError("Residency progress not found")

    step_progress = session.exec(
        select(ResidencyStepProgress).where(
            ResidencyStepProgress.progress_id == progress.id,
            ResidencyStepProgress.step_id == step_id,
        )
    ).first()
    if step_progress is None:
        raise RecordNotFoundError("Residency step not found")

    now = get_datetime_utc()
    step_progress.status = status.value
    step_progress.notes = notes
    step_progress.completed_at = now if status == StepStatus.COMPLETED else None
    session.add(step_progress)
    session.flush()

    rows = _load_steps(session, progress.id)
    overall = derive_overall_status(row.status for _, row in rows)
    if overall.value != progress.status:
        logger.info(
            "Residency progress %s status %s -> %s",
            progress.id,
            progress.status,
            overall.value,
        )
    progress.status = overall.value
    progress.updated_at = now
    session.add(progress)
    session.commit()
    session.refresh(progress)
    return _to_public(progress, _load_steps(session, progress.id))
