"""Definition lifecycle: drafts, published versions and archival."""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import Constraints, ValidationMode, ValidationResult, WorkflowDefinition
from .errors import DefinitionNotFound, DefinitionNotValid
from .persistence import DefinitionRecord, DefinitionStatus, WorkflowRepository, get_repository
from .utils.clock import Clock, utc_now
from .validator import validate_definition

logger = logging.getLogger(__name__)


class DefinitionService:
    """Store definitions as numbered versions.

    A published version is never modified: saving a draft on top of it
    creates the next version. Publishing always validates in strict mode.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        constraints: Optional[Constraints] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository if repository is not None else get_repository()
        self.constraints = constraints
        self._clock = clock

    def validate(
        self, definition: WorkflowDefinition, mode: ValidationMode = ValidationMode.STRICT
    ) -> ValidationResult:
        return validate_definition(definition, self.constraints, mode)

    async def save_draft(self, definition: WorkflowDefinition) -> DefinitionRecord:
        """Save ``definition`` as the current draft; invalid drafts are allowed."""
        latest = await self.repository.get_definition(definition.definition_id)
        if latest is None:
            version = 1
        elif latest.status is DefinitionStatus.DRAFT:
            version = latest.version
        else:
            version = latest.version + 1
        record = DefinitionRecord(
            definition_id=definition.definition_id,
            version=version,
            status=DefinitionStatus.DRAFT,
            definition=definition,
            validation=self.validate(definition),
            created_at=self._clock(),
        )
        await self.repository.save_definition(record)
        logger.info(f"Saved draft {definition.definition_id} v{version}")
        return record

    async def publish(self, definition_id: str, version: Optional[int] = None) -> DefinitionRecord:
        record = await self.repository.get_definition(definition_id, version)
        if record is None:
            raise DefinitionNotFound(definition_id)
        if record.status is DefinitionStatus.PUBLISHED:
            return record
        if record.status is DefinitionStatus.ARCHIVED:
            raise DefinitionNotValid(definition_id, f"version {record.version} is archived")

        validation = self.validate(record.definition)
        record.validation = validation
        if not validation.valid:
            await self.repository.save_definition(record)
            raise DefinitionNotValid(
                definition_id,
                f"{len(validation.errors)} validation errors",
                validation=validation,
            )
        record.status = DefinitionStatus.PUBLISHED
        record.published_at = self._clock()
        await self.repository.save_definition(record)
        logger.info(f"Published {definition_id} v{record.version}")
        return record

    async def save_and_publish(self, definition: WorkflowDefinition) -> DefinitionRecord:
        draft = await self.save_draft(definition)
        return await self.publish(definition.definition_id, draft.version)

    async def archive(self, definition_id: str) -> list[DefinitionRecord]:
        """Archive every version; running runs continue, new runs are refused."""
        records = await self.repository.list_definition_versions(definition_id)
        if not records:
            raise DefinitionNotFound(definition_id)
        for record in records:
            if record.status is not DefinitionStatus.ARCHIVED:
                record.status = DefinitionStatus.ARCHIVED
                await self.repository.save_definition(record)
        logger.info(f"Archived {definition_id}")
        return records

    async def get(self, definition_id: str, version: Optional[int] = None) -> DefinitionRecord:
        record = await self.repository.get_definition(definition_id, version)
        if record is None:
            raise DefinitionNotFound(definition_id)
        return record

    async def list_definitions(self) -> list[DefinitionRecord]:
        return await self.repository.list_definitions()
