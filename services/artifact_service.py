# ============================================================================
# ARTIFACT SERVICE
# ============================================================================
# STATUS: Core - Inter-job data store
# PURPOSE: Write-once run-scoped artifacts and cross-run deploy markers
# CREATED: 19 OCT 2026
# ============================================================================
"""
Artifact Service

Keyed storage for data handed from one JobRun to another.

Rules:
- A (run_id, job, key) triple is written exactly once; a second write
  raises DuplicateArtifactError
- A reader may only read keys produced by itself or by a job it depends
  on (directly or transitively); otherwise ArtifactAccessError
- Reading an authorized but never-written key raises ArtifactNotFoundError
- Each run has its own partition; partitions of terminal runs are
  garbage-collected once the retention window has expired

Job outputs are stored under `outputs.<name>`; runner-captured artifacts
under their own key.

Deploy markers live outside run partitions in a per-environment index
(newest first) and are never garbage-collected with a run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from core.errors import ArtifactAccessError, ArtifactNotFoundError, DuplicateArtifactError
from core.models.events import ArtifactRecord, DeployMarker
from orchestrator.engine.dag import ancestors_of

logger = logging.getLogger(__name__)

OUTPUT_PREFIX = "outputs."


@dataclass
class RunPartition:
    """Artifacts and dependency map of one run."""
    run_id: str
    needs: Dict[str, List[str]] = field(default_factory=dict)
    records: Dict[Tuple[str, str], ArtifactRecord] = field(default_factory=dict)
    terminal_at: Optional[datetime] = None
    _ancestors: Dict[str, Set[str]] = field(default_factory=dict)

    def ancestors(self, job: str) -> Set[str]:
        if job not in self._ancestors:
            self._ancestors[job] = ancestors_of(job, self.needs)
        return self._ancestors[job]


class ArtifactStore:
    """In-memory artifact store partitioned per run."""

    def __init__(
        self,
        retention_seconds: float = 7 * 24 * 3600,
        clock: Optional[Callable[[], datetime]] = None,
        markers_per_environment: int = 50,
    ):
        self.retention = timedelta(seconds=retention_seconds)
        self.markers_per_environment = max(1, markers_per_environment)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._partitions: Dict[str, RunPartition] = {}
        self._markers: Dict[str, List[DeployMarker]] = {}

    # =========================================================================
    # PARTITIONS
    # =========================================================================

    def register_run(self, run_id: str, needs: Mapping[str, List[str]]) -> RunPartition:
        """Create the partition of a run with its job dependency map."""
        partition = self._partitions.get(run_id)
        if partition is None:
            partition = RunPartition(run_id=run_id)
            self._partitions[run_id] = partition
        self.add_jobs(run_id, needs)
        return partition

    def add_jobs(self, run_id: str, needs: Mapping[str, List[str]]) -> None:
        """Add jobs (compensating jobs) to an existing partition."""
        partition = self._partition(run_id)
        for job, deps in needs.items():
            partition.needs[job] = list(deps)
        partition._ancestors.clear()

    def has_run(self, run_id: str) -> bool:
        return run_id in self._partitions

    def _partition(self, run_id: str) -> RunPartition:
        partition = self._partitions.get(run_id)
        if partition is None:
            raise KeyError(f"No artifact partition for run {run_id}")
        return partition

    # =========================================================================
    # WRITE / READ
    # =========================================================================

    def write(self, run_id: str, job: str, key: str, value: Any) -> ArtifactRecord:
        """
        Write one key.

        Raises:
            DuplicateArtifactError: key already written by this job
        """
        partition = self._partition(run_id)
        slot = (job, key)
        if slot in partition.records:
            raise DuplicateArtifactError(run_id, job, key)
        record = ArtifactRecord(run_id=run_id, job=job, key=key, value=value, created_at=self._clock())
        partition.records[slot] = record
        logger.debug(f"Artifact written: run={run_id} job={job} key={key}")
        return record

    def write_many(self, run_id: str, job: str, values: Mapping[str, Any]) -> List[ArtifactRecord]:
        """
        Write several keys; nothing is written if any key already exists.
        """
        partition = self._partition(run_id)
        for key in values:
            if (job, key) in partition.records:
                raise DuplicateArtifactError(run_id, job, key)
        return [self.write(run_id, job, key, value) for key, value in values.items()]

    def commit_outputs(self, run_id: str, job: str, outputs: Mapping[str, Any]) -> None:
        """Store a job's outputs under the outputs.* namespace."""
        self.write_many(run_id, job, {f"{OUTPUT_PREFIX}{k}": v for k, v in outputs.items()})

    def read(self, run_id: str, reader: str, producer: str, key: str) -> Any:
        """
        Read a key produced by `producer` on behalf of `reader`.

        Raises:
            ArtifactAccessError: producer is not an ancestor of reader
            ArtifactNotFoundError: key never written
        """
        partition = self._partition(run_id)
        if reader != producer and producer not in partition.ancestors(reader):
            raise ArtifactAccessError(run_id, reader, producer, key)
        record = partition.records.get((producer, key))
        if record is None:
            raise ArtifactNotFoundError(run_id, producer, key)
        return record.value

    def read_reference(self, run_id: str, reader: str, reference: str) -> Tuple[str, Any]:
        """Read a 'job/key' reference. Returns (key, value)."""
        producer, sep, key = reference.partition("/")
        if not sep or not producer or not key:
            raise ArtifactNotFoundError(run_id, producer or "?", reference)
        return key, self.read(run_id, reader, producer, key)

    def list_keys(self, run_id: str, job: Optional[str] = None) -> List[Tuple[str, str]]:
        partition = self._partitions.get(run_id)
        if partition is None:
            return []
        return sorted(slot for slot in partition.records if job is None or slot[0] == job)

    def outputs_of(self, run_id: str, job: str) -> Dict[str, Any]:
        partition = self._partitions.get(run_id)
        if partition is None:
            return {}
        return {
            key[len(OUTPUT_PREFIX):]: record.value
            for (producer, key), record in partition.records.items()
            if producer == job and key.startswith(OUTPUT_PREFIX)
        }

    # =========================================================================
    # RETENTION
    # =========================================================================

    def mark_run_terminal(self, run_id: str, at: Optional[datetime] = None) -> None:
        partition = self._partitions.get(run_id)
        if partition is not None and partition.terminal_at is None:
            partition.terminal_at = at or self._clock()

    def collect_garbage(self, now: Optional[datetime] = None) -> List[str]:
        """Drop partitions of terminal runs past the retention window."""
        now = now or self._clock()
        expired = [
            run_id for run_id, partition in self._partitions.items()
            if partition.terminal_at is not None and now - partition.terminal_at >= self.retention
        ]
        for run_id in expired:
            del self._partitions[run_id]
        if expired:
            logger.info(f"Garbage-collected artifact partitions: {expired}")
        return expired

    # =========================================================================
    # DEPLOY MARKERS
    # =========================================================================

    def record_deploy_marker(self, marker: DeployMarker) -> None:
        markers = self._markers.setdefault(marker.environment, [])
        markers.insert(0, marker)
        # Newest first, capped per environment
        del markers[self.markers_per_environment:]
        logger.info(
            f"Deploy marker recorded: env={marker.environment} run={marker.run_id} "
            f"job={marker.job} sha={marker.sha}"
        )

    def last_known_good(
        self,
        environment: str,
        exclude_run_id: Optional[str] = None,
    ) -> Optional[DeployMarker]:
        """Most recent succeeded deploy to `environment` from another run."""
        for marker in self._markers.get(environment, []):
            if marker.run_id != exclude_run_id:
                return marker
        return None

    def markers(self, environment: str) -> List[DeployMarker]:
        return list(self._markers.get(environment, []))

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "partitions": len(self._partitions),
            "records": sum(len(p.records) for p in self._partitions.values()),
            "environments_with_markers": sorted(self._markers),
        }


__all__ = ["ArtifactStore", "RunPartition", "OUTPUT_PREFIX"]
