# backend/videoconvert/resolver.py
"""Turn output directories and artifact paths into URLs under ``/files``."""
import os
from typing import Optional
from urllib.parse import quote

from .schemas import ArtifactLocation, ArtifactRead


def files_url(base_url: str, *parts: str) -> str:
    return f"{base_url.rstrip('/')}/files/" + "/".join(quote(p) for p in parts if p)


def browse_url(output_location: Optional[str], base_url: str) -> Optional[str]:
    if not output_location:
        return None
    directory = os.path.basename(os.path.normpath(output_location))
    return files_url(base_url, directory) + "/"


def resolve_artifact(
    output_location: Optional[str],
    artifact_path: Optional[str],
    base_url: str,
    *,
    ordinal: int,
    timestamp: Optional[float] = None,
    job_id: Optional[str] = None,
    artifact_id: Optional[int] = None,
) -> Optional[ArtifactLocation]:
    if not artifact_path:
        return None

    file_name = os.path.basename(artifact_path)
    if output_location:
        directory = os.path.basename(os.path.normpath(output_location))
    else:
        directory = os.path.basename(os.path.dirname(artifact_path))

    return ArtifactLocation(
        id=artifact_id,
        job_id=job_id,
        ordinal=ordinal,
        timestamp=timestamp,
        path=artifact_path,
        file_name=file_name,
        directory=directory,
        url=files_url(base_url, directory, file_name),
    )


def resolve_row(output_location: Optional[str], artifact: Optional[ArtifactRead], base_url: str) -> Optional[ArtifactLocation]:
    if artifact is None:
        return None
    return resolve_artifact(
        output_location,
        artifact.frame_path,
        base_url,
        ordinal=artifact.frame_number,
        timestamp=artifact.timestamp,
        job_id=artifact.job_id,
        artifact_id=artifact.id,
    )
