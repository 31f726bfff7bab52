"""
Tests for the project config loader.
"""

import textwrap
from pathlib import Path

import pytest

from stackdeploy.core.config.loader import find_project_file, load_project, project_root
from stackdeploy.core.errors import ConfigError


class TestLoadProject:
    def test_sample_project(self, project_file: Path):
        project = load_project(project_file)

        assert project.name == "chat-app"
        assert project.environment_names == ["dev", "test", "prod"]
        assert project.default_environment_name() == "dev"
        assert project.get_environment("prod").variables == {"use_cdn": True, "memory": 512}
        assert [r.id for r in project.resources] == ["bucket.assets", "function.api", "edge.cdn"]
        assert project.get_resource("edge.cdn").when == "use_cdn"
        assert project.outputs["bucket_arn"].sensitive
        assert project.credentials.source == "mock"

    def test_wrapped_under_project_key(self, tmp_path: Path):
        path = tmp_path / "stackdeploy.yml"
        path.write_text(textwrap.dedent("""\
            project:
              name: wrapped
            environments:
              - name: dev
        """))
        project = load_project(path)
        assert project.name == "wrapped"
        assert project.environment_names == ["dev"]

    def test_resource_files_appended_in_order(self, project_file: Path):
        resources = project_file.parent / "resources"
        resources.mkdir()
        (resources / "20-queues.yml").write_text("- {type: queue, name: jobs}\n")
        (resources / "10-tables.yaml").write_text(textwrap.dedent("""\
            resources:
              - {type: table, name: messages, stateful: true}
            data:
              - {type: zone, name: main}
        """))
        (resources / "notes.txt").write_text("ignored")

        project = load_project(project_file)

        assert [r.id for r in project.resources][-2:] == ["table.messages", "queue.jobs"]
        assert [d.id for d in project.data] == ["data.identity.current", "data.zone.main"]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_project(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "stackdeploy.yml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_project(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "stackdeploy.yml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_project(path)

    def test_schema_violation(self, tmp_path: Path):
        path = tmp_path / "stackdeploy.yml"
        path.write_text("name: x\nbackend: {type: ftp}\n")
        with pytest.raises(ConfigError, match="Invalid project configuration"):
            load_project(path)

    def test_duplicate_declaration(self, tmp_path: Path):
        path = tmp_path / "stackdeploy.yml"
        path.write_text(textwrap.dedent("""\
            name: x
            resources:
              - {type: bucket, name: a}
              - {type: bucket, name: a}
        """))
        with pytest.raises(ConfigError, match="Duplicate declaration: bucket.a"):
            load_project(path)

    def test_unknown_default_environment(self, tmp_path: Path):
        path = tmp_path / "stackdeploy.yml"
        path.write_text("name: x\ndefault_environment: qa\nenvironments: [{name: dev}]\n")
        with pytest.raises(ConfigError, match="default_environment"):
            load_project(path)


class TestFindProjectFile:
    def test_walks_up(self, project_file: Path):
        nested = project_file.parent / "src" / "api"
        nested.mkdir(parents=True)
        assert find_project_file(nested) == project_file.resolve()

    def test_not_found(self, tmp_path: Path):
        empty = tmp_path / "empty"
        empty.mkdir()
        # tmp_path itself holds no stackdeploy.yml and neither do its parents
        assert find_project_file(empty) is None

    def test_project_root(self, project_file: Path):
        assert project_root(project_file) == project_file.parent.resolve()
