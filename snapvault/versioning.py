import hashlib
import json
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from .models import (
    ChangeKind,
    ChangeTotals,
    DetailedComparison,
    Difference,
    FileRecord,
    Snapshot,
    VersionComparison,
    VersionInfo,
    snapshot_to_wire,
)


def canonical_json(obj: Any) -> bytes:
    """Serialize with sorted keys so equal records always produce equal bytes."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def digest(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def record_checksum(record: FileRecord) -> str:
    return digest(canonical_json(record.to_wire()))


def record_size(record: FileRecord) -> int:
    return len(canonical_json(record.to_wire()))


class VersionManager:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def create_version_info(self, data: bytes) -> VersionInfo:
        checksum = digest(data)
        now = self._now_ms()
        iso = datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat()
        return VersionInfo(
            hash=checksum,
            timestamp=now,
            size=len(data),
            created_at=iso,
            modified_at=iso,
            checksum=checksum,
        )

    def compare_versions(self, local_data: bytes, remote_version: VersionInfo) -> VersionComparison:
        local_version = self.create_version_info(local_data)
        return VersionComparison(
            is_equal=local_version.checksum == remote_version.checksum,
            is_newer=local_version.timestamp > remote_version.timestamp,
            time_diff=abs(local_version.timestamp - remote_version.timestamp),
            formatted_diff=self.format_time_difference(
                local_version.timestamp, remote_version.timestamp
            ),
            local_version=local_version,
            remote_version=remote_version,
        )

    def compare_detailed(
        self,
        local_snapshot: Snapshot,
        remote_snapshot: Snapshot,
        remote_version: VersionInfo | None = None,
    ) -> DetailedComparison:
        """Diff two snapshots path by path.

        Paths only present locally are ``added``, paths only present remotely
        are ``deleted`` and paths present on both sides whose canonical record
        checksums differ are ``modified``. Each path is reported at most once.
        """
        differences: list[Difference] = []
        totals = ChangeTotals()

        for path in sorted(local_snapshot.keys() | remote_snapshot.keys()):
            local = local_snapshot.get(path)
            remote = remote_snapshot.get(path)

            if remote is None:
                differences.append(
                    Difference(
                        path=path,
                        kind=ChangeKind.ADDED,
                        new_checksum=record_checksum(local),
                        size_new=record_size(local),
                    )
                )
                totals.added += 1
            elif local is None:
                differences.append(
                    Difference(
                        path=path,
                        kind=ChangeKind.DELETED,
                        old_checksum=record_checksum(remote),
                        size_old=record_size(remote),
                    )
                )
                totals.deleted += 1
            else:
                local_checksum = record_checksum(local)
                remote_checksum = record_checksum(remote)
                if local_checksum != remote_checksum:
                    differences.append(
                        Difference(
                            path=path,
                            kind=ChangeKind.MODIFIED,
                            old_checksum=remote_checksum,
                            new_checksum=local_checksum,
                            size_old=record_size(remote),
                            size_new=record_size(local),
                        )
                    )
                    totals.modified += 1

        logger.debug(
            f"Detailed comparison: {totals.added} added, {totals.modified} modified, "
            f"{totals.deleted} deleted"
        )

        local_version = self.create_version_info(canonical_json(snapshot_to_wire(local_snapshot)))
        if remote_version is None:
            remote_version = self.create_version_info(
                canonical_json(snapshot_to_wire(remote_snapshot))
            )

        return DetailedComparison(
            is_equal=not differences,
            is_newer=local_version.timestamp > remote_version.timestamp,
            time_diff=abs(local_version.timestamp - remote_version.timestamp),
            formatted_diff=self.format_time_difference(
                local_version.timestamp, remote_version.timestamp
            ),
            local_version=local_version,
            remote_version=remote_version,
            differences=differences,
            total_changes=totals,
        )

    @staticmethod
    def format_time_difference(first_ms: int, second_ms: int) -> str:
        seconds = abs(first_ms - second_ms) // 1000

        for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
            if seconds >= size:
                value = seconds // size
                return f"{value} {unit}{'s' if value != 1 else ''}"

        return f"{seconds} second{'s' if seconds != 1 else ''}"
