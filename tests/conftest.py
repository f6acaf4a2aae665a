"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from internal_services.controller.loader import ConfigLoader
from internal_services.controller.models import InternalRequestCreate, InternalRequestView
from internal_services.controller.notifications import RequestCompletion
from internal_services.controller.reconciler import InternalRequestController
from internal_services.controller.repository import RequestRepository
from internal_services.controller.triggers import TriggerQueue
from internal_services.pipelines.catalog import PipelineCatalog
from internal_services.pipelines.models import PipelineView, PipelineWrite
from internal_services.pipelines.runs import PipelineRunStore

PIPELINE_NAMESPACE = "internal-services"
TENANT_NAMESPACE = "tenant-a"


@dataclass
class RecordingListener:
    completions: list[RequestCompletion] = field(default_factory=list)

    def request_completed(self, completion: RequestCompletion) -> None:
        self.completions.append(completion)


@dataclass
class ControllerHarness:
    """Stores sharing one SQLite database plus a services config file."""

    db_path: Path
    config_path: Path
    repository: RequestRepository
    triggers: TriggerQueue
    catalog: PipelineCatalog
    runs: PipelineRunStore
    listener: RecordingListener = field(default_factory=RecordingListener)

    def write_config(
        self,
        *,
        allow_list: tuple[str, ...] = (TENANT_NAMESPACE,),
        deny_list: tuple[str, ...] = (),
        debug: bool = False,
    ) -> None:
        self.config_path.write_text(
            json.dumps(
                {
                    "allowList": list(allow_list),
                    "denyList": list(deny_list),
                    "debug": debug,
                    "pipelineNamespace": PIPELINE_NAMESPACE,
                },
            ),
            "utf-8",
        )

    def controller(self, **kwargs) -> InternalRequestController:
        options = {
            "repository": self.repository,
            "triggers": self.triggers,
            "catalog": self.catalog,
            "runs": self.runs,
            "config_loader": ConfigLoader(self.config_path),
            "controller_id": "controller-test",
            "listener": self.listener,
            "poll_interval_seconds": 0.0,
            "requeue_base_seconds": 1.0,
            "requeue_max_seconds": 8.0,
        }
        options.update(kwargs)
        return InternalRequestController(**options)

    def create_request(
        self,
        name: str = "release-1",
        *,
        namespace: str = TENANT_NAMESPACE,
        request: str = "deploy-x",
        params: dict[str, str] | None = None,
    ) -> InternalRequestView:
        return self.repository.create_request(
            InternalRequestCreate(
                namespace=namespace,
                name=name,
                request=request,
                params=params if params is not None else {"env": "prod"},
            ),
        )

    def register_pipeline(
        self,
        name: str = "deploy-x",
        *,
        command_template: str = "true",
        timeout_seconds: int = 30,
    ) -> PipelineView:
        return self.catalog.register(
            PipelineWrite(
                namespace=PIPELINE_NAMESPACE,
                name=name,
                command_template=command_template,
                timeout_seconds=timeout_seconds,
            ),
        )

    def reload(self, request: InternalRequestView) -> InternalRequestView:
        current = self.repository.get_request(namespace=request.namespace, name=request.name)
        assert current is not None
        return current

    def close(self) -> None:
        self.repository.close()
        self.triggers.close()
        self.catalog.close()
        self.runs.close()


@pytest.fixture()
def harness(tmp_path: Path) -> Iterator[ControllerHarness]:
    db_path = tmp_path / "internal-services.db"
    repository = RequestRepository(db_path)
    repository.init_schema()
    instance = ControllerHarness(
        db_path=db_path,
        config_path=tmp_path / "services-config.json",
        repository=repository,
        triggers=TriggerQueue(db_path, lease_seconds=60),
        catalog=PipelineCatalog(db_path),
        runs=PipelineRunStore(db_path),
    )
    try:
        yield instance
    finally:
        instance.close()
