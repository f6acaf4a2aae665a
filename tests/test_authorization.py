from __future__ import annotations

from pathlib import Path

import allure
import pytest

from internal_services.controller.authorization import AllowListPolicy
from internal_services.controller.loader import ConfigLoader, ConfigLoadError, ServicesConfig

pytestmark = [
    allure.epic("Request Lifecycle"),
    allure.feature("Authorization & Services Config"),
]


def test_allow_list_policy_allows_listed_namespace() -> None:
    decision = AllowListPolicy().evaluate(
        "deploy-x",
        "tenant-a",
        ServicesConfig(allow_list=("tenant-a",)),
    )

    assert decision.allowed
    assert decision.reason == ""


def test_allow_list_policy_denies_unlisted_namespace() -> None:
    decision = AllowListPolicy().evaluate(
        "deploy-x",
        "tenant-b",
        ServicesConfig(allow_list=("tenant-a",)),
    )

    assert not decision.allowed
    assert decision.reason == "the internal request namespace (tenant-b) is not in the allow list"


def test_deny_list_wins_over_allow_list() -> None:
    decision = AllowListPolicy().evaluate(
        "deploy-x",
        "tenant-a",
        ServicesConfig(allow_list=("tenant-a",), deny_list=("tenant-a",)),
    )

    assert not decision.allowed
    assert decision.reason == "the internal request namespace (tenant-a) is denied"


def test_config_loader_falls_back_to_defaults(tmp_path: Path) -> None:
    config = ConfigLoader(tmp_path / "missing.json").load()

    assert config == ServicesConfig()
    assert config.pipeline_namespace == "internal-services"
    assert not config.debug


def test_config_loader_reads_json(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        '{"allowList": ["tenant-a", "tenant-b"], "denyList": ["tenant-c"], '
        '"debug": true, "pipelineNamespace": "pipelines"}',
        "utf-8",
    )

    config = ConfigLoader(path).load()

    assert config.allow_list == ("tenant-a", "tenant-b")
    assert config.deny_list == ("tenant-c",)
    assert config.debug
    assert config.pipeline_namespace == "pipelines"


@pytest.mark.parametrize(
    ("raw", "match"),
    [
        ("{not json", "Cannot read services config"),
        ("[]", "must be a JSON object"),
        ('{"allowList": "tenant-a"}', "allowList"),
        ('{"debug": "yes"}', "debug"),
        ('{"pipelineNamespace": ""}', "pipelineNamespace"),
    ],
)
def test_config_loader_rejects_invalid_files(tmp_path: Path, raw: str, match: str) -> None:
    path = tmp_path / "config.json"
    path.write_text(raw, "utf-8")

    with pytest.raises(ConfigLoadError, match=match):
        ConfigLoader(path).load()
