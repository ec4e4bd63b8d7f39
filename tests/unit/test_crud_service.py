"""Unit tests for GenericCrudService hook ordering, batch delete and error normalisation."""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import BaseModel

from tenantguard.exceptions import (
    AccessDeniedError,
    NotFoundError,
    RepositoryError,
    ServiceError,
    UnauthorizedError,
    ValidationError,
)
from tenantguard.services.crud import FieldConstraint, GenericCrudService
from tenantguard.storage.backends.memory import InMemoryBackend
from tenantguard.storage.query import Query
from tenantguard.storage.repository import GenericRepository, RepositoryConfig

TABLE = "tickets"


def _repo(backend: InMemoryBackend) -> GenericRepository[dict[str, Any]]:
    return GenericRepository(backend, RepositoryConfig(table=TABLE, mapper=dict))


class RecordingService(GenericCrudService[dict[str, Any]]):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.calls: list[str] = []

    async def validate_create(self, data, principal) -> None:
        self.calls.append("validate_create")

    async def before_create(self, data, principal) -> None:
        self.calls.append("before_create")
        data["subject"] = data["subject"].strip()

    async def after_create(self, entity, principal) -> None:
        self.calls.append("after_create")

    async def on_created(self, entity) -> None:
        self.calls.append("on_created")

    async def check_update_authorization(self, entity, principal) -> None:
        self.calls.append("check_update_authorization")

    async def validate_update(self, record_id, data, principal) -> None:
        self.calls.append("validate_update")

    async def before_update(self, existing, data, principal) -> None:
        self.calls.append("before_update")

    async def after_update(self, entity, principal) -> None:
        self.calls.append("after_update")

    async def on_updated(self, before, after) -> None:
        self.calls.append("on_updated")

    async def check_delete_authorization(self, entity, principal) -> None:
        self.calls.append("check_delete_authorization")

    async def before_delete(self, entity, principal) -> None:
        self.calls.append("before_delete")

    async def after_delete(self, entity, principal) -> None:
        self.calls.append("after_delete")

    async def on_deleted(self, entity) -> None:
        self.calls.append("on_deleted")

    async def before_batch_delete(self, ids, principal) -> None:
        self.calls.append("before_batch_delete")

    async def after_batch_delete(self, result, principal) -> None:
        self.calls.append("after_batch_delete")


class ExplodingEvents(GenericCrudService[dict[str, Any]]):
    async def on_created(self, entity) -> None:
        raise RuntimeError("webhook down")


@pytest.fixture()
def seeded(backend: InMemoryBackend) -> InMemoryBackend:
    backend.seed(
        TABLE,
        [
            {"id": "r1", "tenant_id": "tenant-1", "subject": "one"},
            {"id": "r2", "tenant_id": "tenant-1", "subject": "two"},
            {"id": "r3", "tenant_id": "tenant-1", "subject": "three"},
            {"id": "x1", "tenant_id": "tenant-2", "subject": "other"},
        ],
    )
    return backend


@pytest.mark.unit
class TestHookOrder:
    async def test_create(self, backend, gateway, tenant1_admin) -> None:
        service = RecordingService(_repo(backend), gateway)
        created = await service.create({"subject": "  hi  "}, principal=tenant1_admin)
        await service.drain_events()
        assert created["subject"] == "hi"
        assert service.calls == ["validate_create", "before_create", "after_create", "on_created"]

    async def test_update(self, seeded, gateway, tenant1_admin) -> None:
        service = RecordingService(_repo(seeded), gateway)
        await service.update("r1", {"subject": "changed"}, principal=tenant1_admin)
        await service.drain_events()
        assert service.calls == [
            "check_update_authorization",
            "validate_update",
            "before_update",
            "after_update",
            "on_updated",
        ]

    async def test_delete(self, seeded, gateway, tenant1_admin) -> None:
        service = RecordingService(_repo(seeded), gateway)
        await service.delete("r1", principal=tenant1_admin)
        await service.drain_events()
        assert service.calls == [
            "check_delete_authorization",
            "before_delete",
            "after_delete",
            "on_deleted",
        ]

    async def test_failed_validation_stops_pipeline(self, backend, tenant1_admin) -> None:
        class Strict(RecordingService):
            async def validate_create(self, data, principal) -> None:
                await super().validate_create(data, principal)
                self.validate_required_fields(data, ["subject", "priority"])

        service = Strict(_repo(backend))
        with pytest.raises(ValidationError) as exc_info:
            await service.create({"subject": "x"}, principal=tenant1_admin)
        assert exc_info.value.field_errors == {"priority": ["priority is required"]}
        assert service.calls == ["validate_create"]
        assert backend.rows(TABLE) == []


@pytest.mark.unit
class TestGatewayIntegration:
    async def test_get_by_id_audited(self, seeded, gateway, tenant1_admin) -> None:
        service = GenericCrudService(_repo(seeded), gateway)
        await service.get_by_id("r1", principal=tenant1_admin)
        entry = gateway.get_validation_audit_log(1)[0]
        assert entry.resource == TABLE
        assert entry.resource_id == "r1"

    async def test_cross_tenant_create_denied_and_audited(
        self, backend, gateway, tenant1_admin
    ) -> None:
        service = GenericCrudService(_repo(backend), gateway)
        with pytest.raises(AccessDeniedError):
            await service.create({"subject": "x", "tenant_id": "tenant-2"}, principal=tenant1_admin)
        assert gateway.get_validation_audit_log(1)[0].requested_tenant_id == "tenant-2"
        assert backend.rows(TABLE) == []

    async def test_other_tenant_record_not_found(self, seeded, gateway, tenant1_admin) -> None:
        service = GenericCrudService(_repo(seeded), gateway)
        with pytest.raises(NotFoundError):
            await service.get_by_id("x1", principal=tenant1_admin)

    async def test_super_admin_reads_any_tenant(self, seeded, gateway, super_admin) -> None:
        service = GenericCrudService(_repo(seeded), gateway)
        entity = await service.get_by_id("x1", principal=super_admin)
        assert entity["tenant_id"] == "tenant-2"


@pytest.mark.unit
class TestBatchDelete:
    async def test_partial_failure(self, seeded, tenant1_admin, monkeypatch) -> None:
        service = RecordingService(_repo(seeded))
        original = seeded.update

        async def flaky_update(query: Query, values: dict[str, Any]) -> list[dict[str, Any]]:
            if any(getattr(f, "value", None) == "r2" for f in query.filters):
                raise ConnectionError("storage unavailable")
            return await original(query, values)

        monkeypatch.setattr(seeded, "update", flaky_update)
        result = await service.batch_delete(["r1", "r2", "r3"], principal=tenant1_admin)

        assert result.success_ids == ["r1", "r3"]
        assert result.failed_ids == ["r2"]
        assert result.success_count + result.failure_count == result.total == 3
        assert result.to_dict() == {
            "success_ids": ["r1", "r3"],
            "failed_ids": ["r2"],
            "errors": [{"id": "r2", "message": "Failed to soft delete tickets"}],
            "total": 3,
            "success_count": 2,
            "failure_count": 1,
        }
        assert isinstance(result.errors[0].error, RepositoryError)
        assert service.calls[0] == "before_batch_delete"
        assert service.calls[-1] == "after_batch_delete"

    async def test_cross_tenant_ids_fail_individually(
        self, seeded, gateway, tenant1_admin
    ) -> None:
        service = GenericCrudService(_repo(seeded), gateway)
        result = await service.batch_delete(["r1", "x1"], principal=tenant1_admin)
        assert result.success_ids == ["r1"]
        assert result.failed_ids == ["x1"]
        assert result.errors[0].message == "tickets not found: x1"

    async def test_empty(self, backend, tenant1_admin) -> None:
        service = RecordingService(_repo(backend))
        result = await service.batch_delete([], principal=tenant1_admin)
        assert result.total == 0
        assert service.calls == []


@pytest.mark.unit
class TestEventsAndErrors:
    async def test_event_failure_does_not_undo_create(self, backend, tenant1_admin) -> None:
        service = ExplodingEvents(_repo(backend))
        created = await service.create({"subject": "ok"}, principal=tenant1_admin)
        await service.drain_events()
        assert [r["id"] for r in backend.rows(TABLE)] == [created["id"]]

    async def test_unexpected_error_normalised(self, backend, tenant1_admin) -> None:
        class Broken(GenericCrudService[dict[str, Any]]):
            async def before_create(self, data, principal) -> None:
                raise KeyError("boom")

        with pytest.raises(ServiceError) as exc_info:
            await Broken(_repo(backend)).create({"subject": "x"}, principal=tenant1_admin)
        assert type(exc_info.value) is ServiceError
        assert exc_info.value.message == "An unexpected error occurred"
        assert isinstance(exc_info.value.__cause__, KeyError)

    async def test_pydantic_error_becomes_validation_error(self, backend, tenant1_admin) -> None:
        class Payload(BaseModel):
            subject: str

        class Typed(GenericCrudService[dict[str, Any]]):
            async def validate_create(self, data, principal) -> None:
                Payload.model_validate(data)

        with pytest.raises(ValidationError) as exc_info:
            await Typed(_repo(backend)).create({"subject": 3}, principal=tenant1_admin)
        assert "subject" in exc_info.value.field_errors

    async def test_typed_errors_pass_through(self, backend) -> None:
        service = GenericCrudService(_repo(backend))
        with pytest.raises(UnauthorizedError):
            await service.create({"subject": "x"}, principal=None)

    async def test_count_exists_restore(self, seeded, tenant1_admin) -> None:
        service = GenericCrudService(_repo(seeded))
        assert await service.count(principal=tenant1_admin) == 3
        await service.delete("r1", principal=tenant1_admin)
        assert not await service.exists("r1", principal=tenant1_admin)
        await service.restore("r1", principal=tenant1_admin)
        assert await service.exists("r1", principal=tenant1_admin)


@pytest.mark.unit
class TestValidationHelpers:
    def test_field_constraints(self) -> None:
        constraints = {
            "name": FieldConstraint(min_length=2, max_length=5),
            "score": FieldConstraint(min=0, max=10),
            "code": FieldConstraint(validator=lambda v: None if v == "ok" else "Bad code"),
        }
        with pytest.raises(ValidationError) as exc_info:
            GenericCrudService.validate_field_constraints(
                {"name": "x", "score": 11, "code": "no"}, constraints
            )
        assert exc_info.value.field_errors == {
            "name": ["Minimum length is 2"],
            "score": ["Maximum value is 10"],
            "code": ["Bad code"],
        }

    def test_constraints_skip_missing_fields(self) -> None:
        GenericCrudService.validate_field_constraints({}, {"name": FieldConstraint(min_length=2)})

    def test_get_changes(self) -> None:
        changes = GenericCrudService.get_changes({"a": 1, "b": 2}, {"a": 1, "b": 3})
        assert changes == {"b": {"before": 2, "after": 3}}
