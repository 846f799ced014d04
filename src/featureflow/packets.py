"""Versioned storage of the artifact each phase hands to the next.

Versions are numbered per ``(feature_id, phase)``. Only one version per phase
can be in progress; completing a version stores its diff against the
previous one.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from featureflow.diff import diff_packets
from featureflow.models import (
    PHASE_ORDER,
    AgentType,
    FeatureStatus,
    HandoffPacket,
    PacketDiffView,
    PacketOutput,
    PacketStatus,
)
from featureflow.state_db import ConflictError, FeatureNotFound, StateDB, to_db_ts, utc_now

logger = logging.getLogger(__name__)

_JSON_COLUMNS = ("output_artifacts", "output_decisions", "diff_from_previous")


class PacketNotFound(LookupError):
    def __init__(self, packet_id: str) -> None:
        self.packet_id = packet_id
        super().__init__(f"Handoff packet not found: {packet_id}")


class NoPreviousVersion(Exception):
    def __init__(self, packet_id: str) -> None:
        self.packet_id = packet_id
        super().__init__(
            f"Packet {packet_id} is version 1; there is no previous version to diff against"
        )


def _row_to_packet(row: dict[str, Any]) -> HandoffPacket:
    data = dict(row)
    for column in _JSON_COLUMNS:
        if data.get(column) is not None:
            data[column] = json.loads(data[column])
    if data.get("output_artifacts") is None:
        data["output_artifacts"] = []
    if data.get("output_decisions") is None:
        data["output_decisions"] = []
    return HandoffPacket.model_validate(data)


def _phase(value: FeatureStatus | str) -> FeatureStatus:
    phase = FeatureStatus(value)
    if phase not in PHASE_ORDER:
        msg = f"{phase.value} is not a handoff phase"
        raise ValueError(msg)
    return phase


class HandoffPacketStore:
    def __init__(
        self,
        db: StateDB,
        max_summary_chars: int = 10_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.max_summary_chars = max_summary_chars
        self._clock = clock

    def create_version(
        self,
        feature_id: str,
        phase: FeatureStatus | str,
        agent_id: str,
        agent_type: AgentType = AgentType.AI_AGENT,
    ) -> HandoffPacket:
        """Open the next version of *phase* for *feature_id*.

        Raises ConflictError if a version of that phase is still in progress.
        """
        phase = _phase(phase)
        if self.db.get_feature(feature_id) is None:
            raise FeatureNotFound(feature_id)
        try:
            row = self.db.insert_packet_version(
                str(uuid.uuid4()),
                feature_id,
                phase.value,
                agent_id=agent_id,
                agent_type=AgentType(agent_type).value,
                started_at=to_db_ts(self._clock()),
            )
        except ConflictError:
            logger.info("Version conflict for %s/%s", feature_id, phase.value)
            raise
        packet = _row_to_packet(row)
        logger.debug(
            "Created packet %s v%d for %s/%s",
            packet.id,
            packet.version,
            feature_id,
            phase.value,
        )
        return packet

    def get(self, packet_id: str) -> HandoffPacket:
        row = self.db.get_packet(packet_id)
        if row is None:
            raise PacketNotFound(packet_id)
        return _row_to_packet(row)

    def list_versions(
        self, feature_id: str, phase: FeatureStatus | str
    ) -> list[HandoffPacket]:
        rows = self.db.list_packets(feature_id, _phase(phase).value)
        return [_row_to_packet(r) for r in rows]

    def latest(self, feature_id: str, phase: FeatureStatus | str) -> HandoffPacket | None:
        versions = self.list_versions(feature_id, phase)
        return versions[-1] if versions else None

    def list_for_feature(self, feature_id: str) -> list[HandoffPacket]:
        """All packets of a feature, in pipeline phase order then version."""
        packets = [_row_to_packet(r) for r in self.db.list_packets(feature_id)]
        return sorted(packets, key=lambda p: (PHASE_ORDER.index(p.phase), p.version))

    def _require_in_progress(
        self, packet_id: str, agent_id: str | None = None
    ) -> HandoffPacket:
        packet = self.get(packet_id)
        if packet.status != PacketStatus.IN_PROGRESS:
            msg = f"Packet {packet_id} is {packet.status.value}, not in progress"
            raise ConflictError(msg, feature_id=packet.feature_id, phase=packet.phase.value)
        if agent_id is not None and packet.agent_id != agent_id:
            msg = f"Packet {packet_id} belongs to {packet.agent_id}, not {agent_id}"
            raise ConflictError(msg, feature_id=packet.feature_id, phase=packet.phase.value)
        return packet

    def _finish(self, packet: HandoffPacket, **fields: Any) -> HandoffPacket:
        if not self.db.update_in_progress_packet(packet.id, **fields):
            msg = f"Packet {packet.id} was finished concurrently"
            raise ConflictError(msg, feature_id=packet.feature_id, phase=packet.phase.value)
        return self.get(packet.id)

    def _timing(self, packet: HandoffPacket) -> dict[str, Any]:
        completed_at = self._clock()
        duration_ms = None
        if packet.started_at is not None:
            delta = completed_at - packet.started_at
            duration_ms = max(0, int(delta.total_seconds() * 1000))
        return {"completed_at": to_db_ts(completed_at), "duration_ms": duration_ms}

    def complete(
        self,
        packet_id: str,
        output: PacketOutput,
        agent_id: str | None = None,
    ) -> HandoffPacket:
        """Mark an in-progress packet completed and store its diff."""
        packet = self._require_in_progress(packet_id, agent_id)

        summary = output.summary
        if len(summary) > self.max_summary_chars:
            summary = summary[: self.max_summary_chars]

        finished = packet.model_copy(
            update={
                "output_summary": summary,
                "output_artifacts": output.artifacts,
                "output_decisions": output.decisions,
            }
        )
        diff_json = None
        if packet.previous_version_id is not None:
            previous = self.get(packet.previous_version_id)
            diff_json = diff_packets(previous, finished).model_dump_json(by_alias=True)

        return self._finish(
            packet,
            status=PacketStatus.COMPLETED.value,
            output_summary=summary,
            output_artifacts=json.dumps(
                [a.model_dump(mode="json") for a in output.artifacts]
            ),
            output_decisions=json.dumps(
                [d.model_dump(mode="json") for d in output.decisions]
            ),
            diff_from_previous=diff_json,
            **self._timing(packet),
        )

    def reject(self, packet_id: str, reason: str) -> HandoffPacket:
        packet = self._require_in_progress(packet_id)
        return self._finish(
            packet,
            status=PacketStatus.REJECTED.value,
            rejection_reason=reason,
            **self._timing(packet),
        )

    def skip(self, packet_id: str) -> HandoffPacket:
        packet = self._require_in_progress(packet_id)
        return self._finish(packet, status=PacketStatus.SKIPPED.value, **self._timing(packet))

    def diff_view(self, feature_id: str, packet_id: str) -> PacketDiffView:
        """Diff a packet against its previous version.

        Completed packets serve the diff stored at completion. Others are
        diffed on demand.
        """
        current = self.get(packet_id)
        if current.feature_id != feature_id:
            raise PacketNotFound(packet_id)
        if current.previous_version_id is None:
            raise NoPreviousVersion(packet_id)
        previous = self.get(current.previous_version_id)
        return PacketDiffView(
            diff=current.diff_from_previous or diff_packets(previous, current),
            current_version=current.version,
            previous_version=previous.version,
        )
