"""Unit tests for pipeline.py - executor plan construction."""

import re

import pytest

from models import GroupVersionKind
from pipeline import (
    PROMISE_ID_LABEL,
    REQUEST_ID_LABEL,
    PipelineImages,
    build_pipeline_executor,
    build_selector_config,
    executor_name,
    format_labels,
    parse_labels,
    reader_command,
    writer_command,
)

REDIS_KIND = GroupVersionKind("redis.redis.opstreelabs.in", "v1", "Redis")


@pytest.fixture
def executor():
    return build_pipeline_executor(
        name="request-pipeline-redis-default-abcde",
        namespace="default",
        kind=REDIS_KIND,
        request_namespace="team-a",
        request_name="my-redis",
        promise_identifier="redis-default",
        request_identifier="redis-default-team-a-my-redis",
        pipeline_images=["acme/render:1", "acme/harden:2"],
        images=PipelineImages(reader="kratix/reader:1", work_creator="kratix/wc:1"),
        platform_api_url="http://platform:8000",
        work_namespace="works",
    )


class TestSelectorDocument:
    """Tests for the flat k=v selector format."""

    def test_format_sorted(self):
        assert format_labels({"zone": "eu", "env": "dev"}) == "env=dev,zone=eu"
        assert format_labels({}) == ""

    def test_parse(self):
        assert parse_labels(" env=dev , zone=eu\n") == {"env": "dev", "zone": "eu"}
        assert parse_labels("") == {}

    @pytest.mark.parametrize("document", ["env", "=dev", "env=dev,zone"])
    def test_parse_rejects_bad_terms(self, document):
        with pytest.raises(ValueError, match="expected key=value"):
            parse_labels(document)

    def test_selector_config(self):
        config_map = build_selector_config("redis-default", {"env": "dev"}, "default")

        assert config_map["kind"] == "ConfigMap"
        assert config_map["metadata"]["name"] == "cluster-selectors-redis-default"
        assert config_map["data"] == {"selectors": "env=dev"}


class TestExecutorName:
    def test_shape(self):
        name = executor_name("redis-default")
        assert re.fullmatch(r"request-pipeline-redis-default-[0-9a-f]{5}", name)

    def test_fresh_per_call(self):
        names = {executor_name("redis-default") for _ in range(20)}
        assert len(names) > 1


class TestCommands:
    def test_reader_command(self):
        assert reader_command(REDIS_KIND, "team-a", "my-redis") == (
            "kratixctl get redis.redis.opstreelabs.in my-redis "
            "--namespace team-a -o yaml > /output/object.yaml"
        )

    def test_writer_command(self):
        assert writer_command("redis-default-team-a-my-redis", "works") == (
            "work-creator --identifier redis-default-team-a-my-redis "
            "--input-directory /work-creator-files --namespace works"
        )


class TestBuildPipelineExecutor:
    """Tests for the executor record layout."""

    def test_identity_and_labels(self, executor):
        metadata = executor["metadata"]
        assert executor["kind"] == "Pod"
        assert metadata["name"] == "request-pipeline-redis-default-abcde"
        assert metadata["labels"] == {
            PROMISE_ID_LABEL: "redis-default",
            REQUEST_ID_LABEL: "redis-default-team-a-my-redis",
        }
        assert executor["spec"]["restartPolicy"] == "OnFailure"
        assert executor["spec"]["serviceAccountName"] == "redis-default-sa"

    def test_stages_run_in_declared_order(self, executor):
        init = executor["spec"]["initContainers"]

        assert [c["name"] for c in init] == [
            "reader",
            "xaas-request-pipeline-stage-1",
            "xaas-request-pipeline-stage-2",
        ]
        assert [c["image"] for c in init[1:]] == ["acme/render:1", "acme/harden:2"]

    def test_reader_materializes_request_into_input(self, executor):
        reader = executor["spec"]["initContainers"][0]

        assert reader["image"] == "kratix/reader:1"
        assert "my-redis --namespace team-a" in reader["command"][2]
        assert reader["volumeMounts"] == [{"name": "input", "mountPath": "/output"}]
        assert reader["env"] == [{"name": "PLATFORM_API_URL", "value": "http://platform:8000"}]

    def test_stages_share_staging_areas(self, executor):
        stage = executor["spec"]["initContainers"][1]

        assert {m["name"]: m["mountPath"] for m in stage["volumeMounts"]} == {
            "input": "/input",
            "output": "/output",
            "metadata": "/metadata",
        }

    def test_writer_gets_output_metadata_and_selectors(self, executor):
        (writer,) = executor["spec"]["containers"]

        assert writer["name"] == "writer"
        assert writer["image"] == "kratix/wc:1"
        assert "--namespace works" in writer["command"][2]
        mounts = {m["name"]: m for m in writer["volumeMounts"]}
        assert mounts["output"]["mountPath"] == "/work-creator-files/input"
        assert mounts["metadata"]["mountPath"] == "/work-creator-files/metadata"
        assert mounts["promise-cluster-selectors"] == {
            "name": "promise-cluster-selectors",
            "mountPath": "/work-creator-files/kratix-system",
            "readOnly": True,
        }

    def test_volumes(self, executor):
        volumes = {v["name"]: v for v in executor["spec"]["volumes"]}

        assert volumes["input"] == {"name": "input", "emptyDir": {}}
        assert volumes["output"]["emptyDir"] == {}
        assert volumes["metadata"]["emptyDir"] == {}
        assert volumes["promise-cluster-selectors"]["configMap"] == {
            "name": "cluster-selectors-redis-default",
            "items": [{"key": "selectors", "path": "promise-cluster-selectors"}],
        }
