# backend/videoconvert/store.py
"""Data access for jobs, their artifacts and process-wide settings.

Every call opens its own session and commits before returning, so reads always
reflect the database and each mutation is a single transaction.
"""
import logging
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from .errors import JobStateError, StorageError
from .models import Artifact, Job, JobStatus, OperationKind, Setting, utcnow
from .schemas import ArtifactRead, JobRead, dump_metadata, load_metadata

logger = logging.getLogger(__name__)


def _job_read(job: Job, artifact_count: int) -> JobRead:
    return JobRead(
        id=job.id,
        filename=job.filename,
        original_name=job.original_name,
        file_size=job.file_size,
        mime_type=job.mime_type,
        operation_type=job.operation_type,
        status=job.status,
        input_path=job.input_path,
        output_path=job.output_path,
        metadata_path=job.metadata_path,
        additional_data=load_metadata(job.additional_data),
        error_message=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
        artifact_count=artifact_count,
    )


def _artifact_read(artifact: Artifact) -> ArtifactRead:
    return ArtifactRead(
        id=artifact.id,
        job_id=artifact.job_id,
        frame_path=artifact.frame_path,
        frame_number=artifact.frame_number,
        timestamp=artifact.timestamp,
        created_at=artifact.created_at,
    )


class Store:
    def __init__(self, engine: Engine):
        self.engine = engine

    # --- jobs ---

    def create_job(
        self,
        *,
        filename: str,
        original_name: str,
        operation_type: OperationKind,
        input_path: Optional[str],
        file_size: Optional[int] = None,
        mime_type: Optional[str] = None,
        additional_data: Optional[BaseModel] = None,
    ) -> str:
        job = Job(
            filename=filename,
            original_name=original_name,
            file_size=file_size,
            mime_type=mime_type,
            operation_type=OperationKind(operation_type).value,
            status=JobStatus.PROCESSING.value,
            input_path=input_path,
            additional_data=dump_metadata(additional_data),
        )
        try:
            with Session(self.engine) as session:
                session.add(job)
                session.commit()
                return job.id
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not create job: {exc}") from exc

    def update_job(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        output_path: Optional[str] = None,
        metadata_path: Optional[str] = None,
        error_message: Optional[str] = None,
        additional_data: Optional[BaseModel] = None,
    ) -> int:
        """Apply the supplied fields. Returns the number of rows changed (0 if unknown)."""
        try:
            with Session(self.engine) as session:
                job = session.get(Job, job_id)
                if not job:
                    return 0

                if status is not None:
                    status = JobStatus(status)
                    current = JobStatus(job.status)
                    if current.is_terminal and status != current:
                        raise JobStateError(f"Job {job_id} is already {current.value}")
                    if status is JobStatus.FAILED and not (error_message or job.error_message):
                        raise JobStateError(f"Job {job_id} cannot fail without an error message")
                    job.status = status.value
                    if status is JobStatus.COMPLETED:
                        job.completed_at = job.completed_at or utcnow()
                        job.error_message = None
                if output_path is not None:
                    job.output_path = output_path
                if metadata_path is not None:
                    job.metadata_path = metadata_path
                if error_message is not None and job.status != JobStatus.COMPLETED.value:
                    job.error_message = error_message
                if additional_data is not None:
                    job.additional_data = dump_metadata(additional_data)

                session.add(job)
                session.commit()
                return 1
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not update job {job_id}: {exc}") from exc

    def get_job(self, job_id: str) -> Optional[JobRead]:
        try:
            with Session(self.engine) as session:
                job = session.get(Job, job_id)
                if not job:
                    return None
                count = session.exec(
                    select(func.count(Artifact.id)).where(Artifact.job_id == job_id)
                ).one()
                return _job_read(job, count)
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not read job {job_id}: {exc}") from exc

    def list_jobs(self) -> List[JobRead]:
        statement = (
            select(Job, func.count(Artifact.id))
            .join(Artifact, Artifact.job_id == Job.id, isouter=True)
            .group_by(Job.id)
            .order_by(col(Job.created_at).desc())
        )
        try:
            with Session(self.engine) as session:
                return [_job_read(job, count) for job, count in session.exec(statement).all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not list jobs: {exc}") from exc

    # --- artifacts ---

    def add_artifact(
        self, job_id: str, path: str, ordinal: int, timestamp: Optional[float] = None
    ) -> int:
        artifact = Artifact(job_id=job_id, frame_path=path, frame_number=ordinal, timestamp=timestamp)
        try:
            with Session(self.engine) as session:
                session.add(artifact)
                session.commit()
                return artifact.id
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not add artifact {ordinal} to job {job_id}: {exc}") from exc

    def list_artifacts(self, job_id: str) -> List[ArtifactRead]:
        statement = (
            select(Artifact)
            .where(Artifact.job_id == job_id)
            .order_by(col(Artifact.frame_number))
        )
        try:
            with Session(self.engine) as session:
                return [_artifact_read(a) for a in session.exec(statement).all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not list artifacts for job {job_id}: {exc}") from exc

    # --- settings ---

    def get_setting(self, key: str) -> Optional[str]:
        try:
            with Session(self.engine) as session:
                setting = session.exec(select(Setting).where(Setting.key == key)).first()
                return setting.value if setting else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not read setting {key}: {exc}") from exc

    def list_settings(self) -> Dict[str, str]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(select(Setting).order_by(col(Setting.key))).all()
                return {row.key: row.value for row in rows}
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not list settings: {exc}") from exc

    def set_setting(self, key: str, value: str) -> None:
        self.set_settings({key: value})

    def set_settings(self, settings: Mapping[str, str]) -> None:
        """Upsert every key in one transaction; nothing is written if any key fails."""
        try:
            with Session(self.engine) as session:
                for key, value in settings.items():
                    self._upsert_setting(session, key, str(value))
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not save settings {list(settings)}: {exc}") from exc

    def seed_settings(self, defaults: Mapping[str, str]) -> None:
        """Insert defaults for keys that are not present yet."""
        try:
            with Session(self.engine) as session:
                existing = set(session.exec(select(Setting.key)).all())
                missing = {k: v for k, v in defaults.items() if k not in existing}
                for key, value in missing.items():
                    session.add(Setting(key=key, value=value))
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not seed default settings: {exc}") from exc
        if missing:
            logger.info("Seeded %d default settings", len(missing))

    @staticmethod
    def _upsert_setting(session: Session, key: str, value: str) -> None:
        setting = session.exec(select(Setting).where(Setting.key == key)).first()
        if setting:
            setting.value = value
            setting.updated_at = utcnow()
        else:
            setting = Setting(key=key, value=value)
        session.add(setting)
