"""Job service implementing background job lifecycle with state machine validation.

This module provides the business logic layer for chat-reply and
tool-generation jobs. It enforces one-directional state transitions,
keeps the resumable output buffer, and takes the short callback lease
that serializes duplicate queue deliveries of the same job.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from journalcoach.db.models import Job, JobKind, JobStatus, to_iso, utc_now
from journalcoach.errors import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition.

    Attributes:
        current_state: The current state of the job.
        attempted_state: The state that was attempted.
        allowed_transitions: List of valid transition targets from current state.
    """

    def __init__(
        self,
        current_state: JobStatus,
        attempted_state: JobStatus,
        allowed_transitions: list[JobStatus],
    ) -> None:
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions
        allowed_str = ", ".join(s.value for s in allowed_transitions) or "none (terminal)"
        super().__init__(
            f"Cannot transition from '{current_state.value}' to '{attempted_state.value}'. "
            f"Allowed transitions: {allowed_str}"
        )


# Valid state transitions for job lifecycle
VALID_TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.PENDING: [JobStatus.PROCESSING, JobStatus.STREAMING, JobStatus.FAILED],
    JobStatus.PROCESSING: [JobStatus.STREAMING, JobStatus.COMPLETED, JobStatus.FAILED],
    JobStatus.STREAMING: [JobStatus.COMPLETED, JobStatus.FAILED],
    JobStatus.COMPLETED: [],  # terminal
    JobStatus.FAILED: [],  # terminal
}

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.STREAMING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobService:
    """Service for job lifecycle management with state machine validation.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the job service with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    # =========================================================================
    # Job CRUD Operations
    # =========================================================================

    def create_job(
        self,
        user_id: str,
        kind: JobKind,
        related_entity_id: str | None = None,
        conversation_id: str | None = None,
        request_json: str | None = None,
        status: JobStatus = JobStatus.PENDING,
        notification_sent: bool = False,
    ) -> Job:
        """Create a new job.

        Args:
            user_id: Owning user.
            kind: chat or tool.
            related_entity_id: Assistant message id (chat) or tool id (tool).
            conversation_id: Conversation for chat jobs.
            request_json: Serialized request payload.
            status: Initial status; PENDING unless generation starts in-request.
            notification_sent: True when the result is delivered live and
                must never be pushed.

        Returns:
            The created Job.
        """
        now = to_iso(utc_now())
        job = Job(
            user_id=user_id,
            kind=kind.value,
            related_entity_id=related_entity_id,
            conversation_id=conversation_id,
            request_json=request_json,
            status=status.value,
            buffer="",
            client_connected=True,
            notification_sent=notification_sent,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info("Created %s job %s (%s)", kind.value, job.id, status.value)
        return job

    def get_job(self, job_id: str) -> Job | None:
        """Get a job by its ID.

        Args:
            job_id: The UUID of the job to retrieve.

        Returns:
            The Job object if found, None otherwise.
        """
        return self.db.query(Job).filter(Job.id == job_id).first()

    def get_job_for_user(self, user_id: str, job_id: str) -> Job:
        """Get a job, enforcing ownership.

        Raises:
            NotFoundError: If the job does not exist.
            ForbiddenError: If the job belongs to another user.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        if job.user_id != user_id:
            raise ForbiddenError("Job belongs to another user")
        return job

    def find_active(self, kind: JobKind, related_entity_id: str) -> Job | None:
        """Return a non-terminal job of this kind for the entity, if any."""
        return (
            self.db.query(Job)
            .filter(
                Job.kind == kind.value,
                Job.related_entity_id == related_entity_id,
                Job.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            .order_by(Job.created_at.desc())
            .first()
        )

    def list_jobs(
        self,
        status: JobStatus | None = None,
        kind: JobKind | None = None,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs with optional filtering and pagination.

        Args:
            status: Filter by job status (optional).
            kind: Filter by job kind (optional).
            user_id: Filter by owner (optional).
            limit: Maximum number of jobs to return (default 50).
            offset: Number of jobs to skip for pagination (default 0).

        Returns:
            List of Job objects matching the criteria, ordered by created_at DESC.
        """
        query = self.db.query(Job)
        if status is not None:
            query = query.filter(Job.status == status.value)
        if kind is not None:
            query = query.filter(Job.kind == kind.value)
        if user_id is not None:
            query = query.filter(Job.user_id == user_id)
        query = query.order_by(Job.created_at.desc())
        query = query.limit(limit).offset(offset)
        return query.all()

    # =========================================================================
    # State Machine Operations
    # =========================================================================

    def can_transition(self, current: JobStatus, target: JobStatus) -> bool:
        """Check if a state transition is valid."""
        return target in VALID_TRANSITIONS.get(current, [])

    def update_status(
        self,
        job_id: str,
        new_status: JobStatus,
        error: str | None = None,
        buffer: str | None = None,
    ) -> Job:
        """Update a job's status with state machine validation.

        Args:
            job_id: The UUID of the job to update.
            new_status: The new status to transition to.
            error: Error text to record (FAILED only).
            buffer: Final buffer contents to store alongside the transition.

        Returns:
            The updated Job object.

        Raises:
            NotFoundError: If job not found.
            InvalidStateTransition: If the transition is not allowed.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)

        current_status = JobStatus(job.status)
        if not self.can_transition(current_status, new_status):
            raise InvalidStateTransition(
                current_state=current_status,
                attempted_state=new_status,
                allowed_transitions=VALID_TRANSITIONS.get(current_status, []),
            )

        now = to_iso(utc_now())
        job.status = new_status.value
        job.updated_at = now
        if buffer is not None:
            job.buffer = buffer
        if error is not None:
            job.error = error

        if new_status in TERMINAL_STATUSES:
            job.completed_at = now
            job.lease_expires_at = None

        self.db.commit()
        self.db.refresh(job)
        logger.info("Job %s: %s -> %s", job_id, current_status.value, new_status.value)
        return job

    def complete(self, job_id: str, buffer: str) -> Job:
        """Mark a job COMPLETED with its final output."""
        return self.update_status(job_id, JobStatus.COMPLETED, buffer=buffer)

    def fail(self, job_id: str, error: str) -> Job:
        """Mark a job FAILED with a rendered "[E-XXXX] message" error."""
        return self.update_status(job_id, JobStatus.FAILED, error=error)

    def complete_for_message(self, message_id: str, content: str) -> Job | None:
        """Complete the active chat job linked to an assistant message, if any.

        Whoever finishes the message (claimer, in-request worker or stream)
        finishes its job too, so a poller never sees a stale PENDING job.
        """
        job = self.find_active(JobKind.chat, message_id)
        if job is None:
            return None
        if JobStatus(job.status) == JobStatus.PENDING:
            self.update_status(job.id, JobStatus.PROCESSING)
        return self.complete(job.id, content)

    # =========================================================================
    # Buffer and Client Signals
    # =========================================================================

    def append_buffer(self, job_id: str, chunk: str) -> None:
        """Append streamed output to a non-terminal job's buffer.

        A terminal job's buffer is final and is left untouched.
        """
        job = self.get_job(job_id)
        if job is None or job.is_terminal or not chunk:
            return
        job.buffer = (job.buffer or "") + chunk
        job.updated_at = to_iso(utc_now())
        self.db.commit()

    def set_client_connected(self, user_id: str, job_id: str, connected: bool) -> Job:
        """Record the client's explicit attach/detach signal."""
        job = self.get_job_for_user(user_id, job_id)
        job.client_connected = connected
        job.updated_at = to_iso(utc_now())
        self.db.commit()
        self.db.refresh(job)
        return job

    def set_queue_message_id(self, job_id: str, queue_message_id: str) -> Job:
        """Store the id the external queue assigned to this job's delivery."""
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        job.external_queue_message_id = queue_message_id
        job.updated_at = to_iso(utc_now())
        self.db.commit()
        self.db.refresh(job)
        return job

    # =========================================================================
    # Callback Lease
    # =========================================================================

    def acquire_lease(
        self,
        job_id: str,
        duration: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Take the callback-processing lease on a non-terminal job.

        Concurrent duplicate deliveries race on this conditional UPDATE;
        only one holds the lease until it expires or the job terminates.

        Returns:
            True if this caller now holds the lease.
        """
        moment = now or utc_now()
        stamp = to_iso(moment)
        taken = (
            self.db.query(Job)
            .filter(
                Job.id == job_id,
                Job.status.in_([s.value for s in ACTIVE_STATUSES]),
                or_(Job.lease_expires_at.is_(None), Job.lease_expires_at <= stamp),
            )
            .update(
                {"lease_expires_at": to_iso(moment + duration), "updated_at": stamp},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return taken == 1

    # =========================================================================
    # Notification Operations
    # =========================================================================

    def list_notification_eligible(
        self, kind: JobKind, now: datetime, delay: timedelta
    ) -> list[Job]:
        """Completed jobs whose result the client may have missed.

        Eligible when the client reported itself detached, or when the job
        finished more than `delay` ago without being polled.
        """
        threshold = to_iso(now - delay)
        return (
            self.db.query(Job)
            .filter(
                Job.kind == kind.value,
                Job.status == JobStatus.COMPLETED.value,
                Job.notification_sent.is_(False),
                or_(Job.client_connected.is_(False), Job.updated_at <= threshold),
            )
            .order_by(Job.updated_at)
            .all()
        )

    def claim_notification(self, job_id: str) -> bool:
        """Flip notification_sent False -> True; True if this caller won."""
        flipped = (
            self.db.query(Job)
            .filter(Job.id == job_id, Job.notification_sent.is_(False))
            .update({"notification_sent": True}, synchronize_session=False)
        )
        self.db.commit()
        return flipped == 1

    def mark_seen(self, job: Job) -> None:
        """Record that the owner observed a terminal job, suppressing its push."""
        if job.is_terminal and not job.notification_sent:
            job.notification_sent = True
            self.db.commit()
