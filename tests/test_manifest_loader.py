from pathlib import Path
import textwrap

import pytest

from cadence.manifests import ManifestLoadError, ManifestLoader, load_manifests


def write_manifest(path: Path, *, plan_name: str) -> None:
    path.write_text(
        textwrap.dedent(
            """
            name: release
            orchestration_id: rel-1
            plan:
              name: {plan_name}
            tasks:
              - key: build
                name: Build artifacts
                priority: high
                acceptance_criteria:
                  - Artifacts signed
              - key: test
                name: Run test suite
                depends_on: build
              - key: ship
                name: Ship
                depends_on:
                  - task: test
                    type: finish_to_start
                  - build
            """
        ).strip().format(plan_name=plan_name),
        encoding="utf-8",
    )


def test_loader_merges_paths(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_manifest(base / "release.yaml", plan_name="Base Plan")
    write_manifest(override / "release.yml", plan_name="Override Plan")

    loader = ManifestLoader([base, override, tmp_path / "missing"])
    manifests = loader.load_all()

    assert manifests["release"].plan.name == "Override Plan"
    assert loader.search_paths == [base, override]


def test_depends_on_accepts_keys_and_mappings(tmp_path: Path) -> None:
    write_manifest(tmp_path / "release.yaml", plan_name="Plan")

    manifest = ManifestLoader([tmp_path]).get("release")

    tasks = {task.key: task for task in manifest.tasks}
    assert [dependency.task for dependency in tasks["test"].depends_on] == ["build"]
    assert [dependency.task for dependency in tasks["ship"].depends_on] == ["test", "build"]
    assert tasks["build"].acceptance_criteria == ["Artifacts signed"]


def test_name_defaults_to_file_stem(tmp_path: Path) -> None:
    (tmp_path / "nightly.yaml").write_text(
        "orchestration_id: nightly-1\ntasks:\n  - key: run\n    name: Run\n",
        encoding="utf-8",
    )
    (tmp_path / "empty.yaml").write_text("", encoding="utf-8")

    manifests = load_manifests([tmp_path])

    assert list(manifests) == ["nightly"]
    assert manifests["nightly"].plan is None


def test_loader_handles_missing_manifests(tmp_path: Path) -> None:
    loader = ManifestLoader([tmp_path])
    assert loader.load_all() == {}
    assert ManifestLoader().load_all() == {}

    with pytest.raises(ManifestLoadError):
        loader.get("absent")


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    invalid = tmp_path / "invalid"
    invalid.mkdir()
    (invalid / "broken.yaml").write_text("orchestration_id: \ntasks: 3", encoding="utf-8")

    loader = ManifestLoader([invalid])

    with pytest.raises(ManifestLoadError):
        loader.load_all()


def test_duplicate_keys_are_rejected(tmp_path: Path) -> None:
    (tmp_path / "dupes.yaml").write_text(
        textwrap.dedent(
            """
            orchestration_id: o
            tasks:
              - key: same
                name: First
              - key: same
                name: Second
            """
        ).strip(),
        encoding="utf-8",
    )

    with pytest.raises(ManifestLoadError) as excinfo:
        ManifestLoader([tmp_path]).load_all()

    assert "Duplicate task keys" in str(excinfo.value)


def test_top_level_must_be_a_mapping(tmp_path: Path) -> None:
    (tmp_path / "list.yaml").write_text("- one\n- two\n", encoding="utf-8")

    with pytest.raises(ManifestLoadError):
        ManifestLoader([tmp_path]).load_all()
