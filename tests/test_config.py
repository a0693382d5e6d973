from __future__ import annotations

import math
from pathlib import Path

import pytest
import yaml

from sfx_reduce.config import (
    ProcessingSettings,
    clear_config_cache,
    get_config_bundle,
    get_config_dir,
    load_settings,
)
from sfx_reduce.config.loader import ENV_CONFIG_DIR
from sfx_reduce.config.settings import settings_from_mapping
from sfx_reduce.errors import ConfigError
from sfx_reduce.model import Detector


def _write_yaml(path: Path, payload: dict) -> None:
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")


def _make_config_dir(
    tmp_path: Path,
    *,
    detector: dict | None = None,
    processing: dict | None = None,
) -> Path:
    cfg = tmp_path / "cfg"
    cfg.mkdir(parents=True)
    _write_yaml(cfg / "detector.yaml", detector or {})
    _write_yaml(cfg / "processing.yaml", processing or {})
    return cfg


@pytest.fixture(autouse=True)
def _reset_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


def test_config_dir_uses_env_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg_a = _make_config_dir(tmp_path / "a", processing={"peak_search": {"threshold": 100.0}})
    cfg_b = _make_config_dir(tmp_path / "b", processing={"peak_search": {"threshold": 200.0}})

    monkeypatch.setenv(ENV_CONFIG_DIR, str(cfg_a))
    assert get_config_dir() == cfg_a.resolve()
    assert load_settings().peak_search.threshold == 100.0

    monkeypatch.setenv(ENV_CONFIG_DIR, str(cfg_b))
    clear_config_cache()
    assert load_settings().peak_search.threshold == 200.0


def test_bundle_is_cached_until_cleared(tmp_path: Path) -> None:
    cfg = _make_config_dir(tmp_path, processing={"n_threads": 2})
    first = get_config_bundle(cfg)
    _write_yaml(cfg / "processing.yaml", {"n_threads": 4})
    assert get_config_bundle(cfg) is first

    clear_config_cache()
    assert get_config_bundle(cfg).processing["n_threads"] == 4


def test_missing_files_give_defaults(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    bundle = get_config_bundle(empty)
    assert bundle.detector == {}
    assert load_settings(bundle) == ProcessingSettings()


def test_repository_config_matches_defaults() -> None:
    bundle = get_config_bundle(Path(__file__).resolve().parents[1] / "config")
    settings = load_settings(bundle)
    assert settings == ProcessingSettings()
    assert math.isinf(settings.integration.min_snr)

    detector = Detector.from_mapping(bundle.detector)
    assert len(detector) == 1
    assert detector[0].w == 1024
    assert detector[0].cnz == pytest.approx(0.1 / 75e-6)


def test_partial_section_keeps_other_defaults() -> None:
    settings = settings_from_mapping(
        {"refinement": {"max_cycles": "3"}, "scaling": {"convergence": 0.1}}
    )
    assert settings.refinement.max_cycles == 3
    assert settings.refinement.min_pairs == 10
    assert settings.scaling.convergence == pytest.approx(0.1)


@pytest.mark.parametrize(
    "payload",
    [
        {"peak_serch": {}},
        {"peak_search": {"treshold": 1.0}},
        {"beam": [1, 2, 3]},
    ],
)
def test_bad_payload_raises(payload: dict) -> None:
    with pytest.raises(ConfigError):
        settings_from_mapping(payload)


def test_non_mapping_file_raises(tmp_path: Path) -> None:
    cfg = tmp_path / "cfg"
    cfg.mkdir()
    (cfg / "processing.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(TypeError):
        get_config_bundle(cfg)
