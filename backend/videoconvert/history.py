# backend/videoconvert/history.py
from typing import List

from .errors import NotFound
from .resolver import browse_url, resolve_row
from .schemas import ArtifactLocation, JobDetail, JobRead
from .store import Store


class HistoryService:
    """Read-only views over jobs and where their outputs can be fetched."""

    def __init__(self, store: Store, base_url: str):
        self.store = store
        self.base_url = base_url

    def get_history(self) -> List[JobRead]:
        return self.store.list_jobs()

    def get_job_detail(self, job_id: str) -> JobDetail:
        job = self._require(job_id)
        return JobDetail(
            **job.model_dump(),
            artifacts=self._locations(job),
            browse_url=browse_url(job.output_path, self.base_url),
        )

    def get_artifacts(self, job_id: str) -> List[ArtifactLocation]:
        return self._locations(self._require(job_id))

    def _require(self, job_id: str) -> JobRead:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFound(job_id)
        return job

    def _locations(self, job: JobRead) -> List[ArtifactLocation]:
        locations = (resolve_row(job.output_path, a, self.base_url) for a in self.store.list_artifacts(job.id))
        return [location for location in locations if location is not None]
