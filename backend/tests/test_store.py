"""Tests for the job/artifact/settings data access layer."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from videoconvert.db import init_db, make_engine
from videoconvert.errors import JobStateError, StorageError
from videoconvert.models import DEFAULT_SETTINGS, Job, JobStatus, OperationKind, Setting
from videoconvert.schemas import FrameExtractionData, TrimData
from videoconvert.store import Store


def _create(store, name="clip.mp4", operation=OperationKind.FRAME_EXTRACTION, **kwargs):
    return store.create_job(
        filename=f"stored-{name}",
        original_name=name,
        operation_type=operation,
        input_path=f"/uploads/stored-{name}",
        file_size=1234,
        mime_type="video/mp4",
        **kwargs,
    )


def _set_created_at(engine, job_id, created_at):
    with Session(engine) as session:
        job = session.get(Job, job_id)
        job.created_at = created_at
        session.add(job)
        session.commit()


class TestJobs:
    def test_create_then_get_returns_fields_unchanged(self, store):
        metadata = FrameExtractionData(mode="count", requested_count=5, preserve_metadata=True)
        job_id = _create(store, additional_data=metadata)

        job = store.get_job(job_id)

        assert job.id == job_id
        assert job.filename == "stored-clip.mp4"
        assert job.original_name == "clip.mp4"
        assert job.file_size == 1234
        assert job.mime_type == "video/mp4"
        assert job.operation_type == OperationKind.FRAME_EXTRACTION
        assert job.status == JobStatus.PROCESSING
        assert job.input_path == "/uploads/stored-clip.mp4"
        assert job.output_path is None
        assert job.error_message is None
        assert job.completed_at is None
        assert job.additional_data == metadata
        assert job.artifact_count == 0

    def test_get_job_twice_is_identical(self, store):
        job_id = _create(store)
        store.update_job(job_id, status=JobStatus.COMPLETED, output_path="/out/frame_extraction_x")

        assert store.get_job(job_id) == store.get_job(job_id)

    def test_ids_are_unique(self, store):
        assert len({_create(store) for _ in range(5)}) == 5

    def test_get_unknown_job_is_none(self, store):
        assert store.get_job("does-not-exist") is None

    def test_update_applies_only_supplied_fields(self, store):
        job_id = _create(store, operation=OperationKind.TRIM, additional_data=TrimData(start=1, end=2))

        changed = store.update_job(job_id, output_path="/out/trim_1")

        job = store.get_job(job_id)
        assert changed == 1
        assert job.output_path == "/out/trim_1"
        assert job.status == JobStatus.PROCESSING
        assert job.additional_data == TrimData(start=1, end=2)

    def test_update_unknown_job_returns_zero(self, store):
        assert store.update_job("missing", status=JobStatus.COMPLETED) == 0

    def test_completion_sets_timestamp(self, store):
        job_id = _create(store)

        store.update_job(job_id, status=JobStatus.COMPLETED)

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.error_message is None

    def test_failure_records_error(self, store):
        job_id = _create(store)

        store.update_job(job_id, status=JobStatus.FAILED, error_message="ffprobe failed")

        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "ffprobe failed"
        assert job.completed_at is None

    def test_failure_without_error_is_rejected(self, store):
        job_id = _create(store)

        with pytest.raises(JobStateError):
            store.update_job(job_id, status=JobStatus.FAILED)
        assert store.get_job(job_id).status == JobStatus.PROCESSING

    @pytest.mark.parametrize("terminal,target", [
        (JobStatus.COMPLETED, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.COMPLETED),
        (JobStatus.COMPLETED, JobStatus.PROCESSING),
    ])
    def test_terminal_states_are_final(self, store, terminal, target):
        job_id = _create(store)
        store.update_job(job_id, status=terminal, error_message="boom")

        with pytest.raises(JobStateError):
            store.update_job(job_id, status=target, error_message="again")
        assert store.get_job(job_id).status == terminal

    def test_list_jobs_newest_first_with_artifact_counts(self, store, engine):
        older = _create(store, "older.mp4")
        newer = _create(store, "newer.mp4")
        now = datetime.now(timezone.utc)
        _set_created_at(engine, older, now - timedelta(minutes=5))
        _set_created_at(engine, newer, now)
        store.add_artifact(older, "/out/a/frame_000001.png", 1, 1.0)
        store.add_artifact(older, "/out/a/frame_000002.png", 2, 2.0)

        jobs = store.list_jobs()

        assert [job.id for job in jobs] == [newer, older]
        assert [job.artifact_count for job in jobs] == [0, 2]

    def test_unreadable_metadata_reads_as_absent(self, store, engine):
        job_id = _create(store)
        with Session(engine) as session:
            job = session.get(Job, job_id)
            job.additional_data = "{not json"
            session.add(job)
            session.commit()

        assert store.get_job(job_id).additional_data is None


class TestArtifacts:
    def test_listed_by_ordinal(self, store):
        job_id = _create(store)
        store.add_artifact(job_id, "/out/d/frame_000003.png", 3, 7.5)
        store.add_artifact(job_id, "/out/d/frame_000001.png", 1, 2.5)
        store.add_artifact(job_id, "/out/d/frame_000002.png", 2, 5.0)

        artifacts = store.list_artifacts(job_id)

        assert [a.frame_number for a in artifacts] == [1, 2, 3]
        assert [a.timestamp for a in artifacts] == [2.5, 5.0, 7.5]
        assert store.get_job(job_id).artifact_count == 3

    def test_duplicate_ordinal_is_rejected(self, store):
        job_id = _create(store)
        store.add_artifact(job_id, "/out/d/frame_000001.png", 1, 1.0)

        with pytest.raises(StorageError):
            store.add_artifact(job_id, "/out/d/other.png", 1, 2.0)

    def test_artifact_needs_existing_job(self, store):
        with pytest.raises(StorageError):
            store.add_artifact("no-such-job", "/out/d/frame_000001.png", 1, 1.0)

    def test_no_artifacts_for_unknown_job(self, store):
        assert store.list_artifacts("no-such-job") == []


class TestSettings:
    def test_defaults_are_seeded(self, store):
        assert store.list_settings() == DEFAULT_SETTINGS
        assert store.get_setting("theme_name") == "Matrix Green"

    def test_seeding_keeps_existing_values(self, store):
        store.set_setting("theme_name", "Ocean")

        store.seed_settings(DEFAULT_SETTINGS)

        assert store.get_setting("theme_name") == "Ocean"

    def test_unknown_setting_is_none(self, store):
        assert store.get_setting("nope") is None

    def test_set_settings_updates_and_inserts(self, store):
        store.set_settings({"theme_name": "Ocean", "theme_font": "mono"})

        settings = store.list_settings()
        assert settings["theme_name"] == "Ocean"
        assert settings["theme_font"] == "mono"
        assert settings["theme_primary_color"] == "#00ff00"

    def test_set_settings_is_all_or_nothing(self, store):
        with pytest.raises(StorageError):
            store.set_settings({"theme_name": "Ocean", None: "broken"})

        assert store.get_setting("theme_name") == "Matrix Green"


class TestFreshDatabase:
    def test_new_rows_carry_utc_timestamps(self):
        assert Setting(key="k", value="v").updated_at.tzinfo is timezone.utc
        assert Job(filename="f", original_name="f", operation_type="trim").created_at.tzinfo is timezone.utc

    def test_init_then_record_jobs_and_settings(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
        try:
            init_db(engine)
            store = Store(engine)

            job_id = _create(store)
            store.update_job(job_id, status=JobStatus.COMPLETED, output_path="/out/frame_extraction_x")
            store.set_setting("theme_name", "Ocean")

            job = store.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert job.completed_at is not None
            assert store.get_setting("theme_name") == "Ocean"
            assert [j.id for j in store.list_jobs()] == [job_id]
        finally:
            engine.dispose()
