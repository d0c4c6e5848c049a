"""Tests for the work-creator pipeline step."""

import json

import click
import pytest
import requests
from click.testing import CliRunner
from unittest.mock import MagicMock, patch

from work_creator import build_work, load_manifests, load_selectors, main, submit_work


@pytest.fixture
def work_dir(tmp_path):
    """A work-creator input directory as the pipeline leaves it."""
    (tmp_path / "input").mkdir()
    (tmp_path / "metadata").mkdir()
    (tmp_path / "kratix-system").mkdir()
    (tmp_path / "input" / "b-service.yaml").write_text(
        "apiVersion: v1\nkind: Service\nmetadata:\n  name: redis\n"
        "---\n"
        "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: redis-config\n"
    )
    (tmp_path / "input" / "a-redis.json").write_text(
        json.dumps({"apiVersion": "redis.redis.opstreelabs.in/v1beta1", "kind": "Redis"})
    )
    (tmp_path / "input" / "notes.txt").write_text("ignored")
    (tmp_path / "kratix-system" / "promise-cluster-selectors").write_text("env=dev")
    return tmp_path


def response(status_code, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    return resp


class TestLoadManifests:
    def test_documents_in_file_order(self, work_dir):
        manifests = load_manifests(work_dir / "input")

        assert [m["kind"] for m in manifests] == ["Redis", "Service", "ConfigMap"]

    def test_missing_directory(self, tmp_path):
        assert load_manifests(tmp_path / "nope") == []

    def test_non_object_document(self, tmp_path):
        (tmp_path / "list.yaml").write_text("- a\n- b\n")
        with pytest.raises(click.ClickException, match="expected an object document"):
            load_manifests(tmp_path)


class TestLoadSelectors:
    def test_promise_selectors(self, work_dir):
        assert load_selectors(work_dir) == {"env": "dev"}

    def test_stage_selectors_merge_under_promise(self, work_dir):
        (work_dir / "metadata" / "cluster-selectors.yaml").write_text(
            "env: prod\nzone: eu\n"
        )

        assert load_selectors(work_dir) == {"env": "dev", "zone": "eu"}

    def test_malformed_promise_selectors(self, work_dir):
        (work_dir / "kratix-system" / "promise-cluster-selectors").write_text("env")
        with pytest.raises(click.ClickException, match="expected key=value"):
            load_selectors(work_dir)


class TestBuildWork:
    def test_build(self, work_dir):
        work = build_work("redis-default-default-my-redis", "default", work_dir)

        assert work["kind"] == "Work"
        assert work["metadata"] == {
            "name": "redis-default-default-my-redis",
            "namespace": "default",
        }
        assert work["spec"]["replicas"] == 1
        assert work["spec"]["clusterSelector"] == {"env": "dev"}
        assert len(work["spec"]["workload"]["manifests"]) == 3

    def test_empty_output_is_an_error(self, tmp_path):
        (tmp_path / "input").mkdir()
        with pytest.raises(click.ClickException, match="No documents found"):
            build_work("redis-default-default-my-redis", "default", tmp_path)


class TestSubmitWork:
    @patch("work_creator.requests.post")
    def test_created(self, mock_post):
        mock_post.return_value = response(201)

        assert submit_work("http://platform:8000/", {"kind": "Work"}) is True
        mock_post.assert_called_once_with(
            "http://platform:8000/api/v1/objects", json={"kind": "Work"}, timeout=30
        )

    @patch("work_creator.requests.post")
    def test_already_exists(self, mock_post):
        mock_post.return_value = response(409)
        assert submit_work("http://platform:8000", {}) is False

    @patch("work_creator.requests.post")
    def test_rejected(self, mock_post):
        mock_post.return_value = response(422, "spec.replicas: invalid")
        with pytest.raises(click.ClickException, match="422"):
            submit_work("http://platform:8000", {})

    @patch("work_creator.requests.post")
    def test_unreachable(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(click.ClickException, match="refused"):
            submit_work("http://platform:8000", {})


class TestMain:
    @patch("work_creator.requests.post")
    def test_creates_work(self, mock_post, work_dir):
        mock_post.return_value = response(201)

        result = CliRunner().invoke(
            main,
            [
                "--identifier", "redis-default-default-my-redis",
                "--input-directory", str(work_dir),
                "--api-url", "http://platform:8000",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Created Work redis-default-default-my-redis with 3 manifest(s)" in result.output
        submitted = mock_post.call_args.kwargs["json"]
        assert submitted["metadata"]["namespace"] == "default"

    @patch("work_creator.requests.post")
    def test_existing_work(self, mock_post, work_dir):
        mock_post.return_value = response(409)

        result = CliRunner().invoke(
            main,
            ["--identifier", "w", "--input-directory", str(work_dir), "--namespace", "works"],
        )

        assert result.exit_code == 0
        assert "Work w already exists" in result.output

    def test_empty_output_fails(self, tmp_path):
        result = CliRunner().invoke(
            main, ["--identifier", "w", "--input-directory", str(tmp_path)]
        )

        assert result.exit_code == 1
        assert "No documents found" in result.output
