"""Tests for configuration loading, platform detection and typed configs."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from clonal_growth.config.environment import detect_cpu_count, detect_platform
from clonal_growth.config.settings import get_typed_config, platform_overlay
from clonal_growth.domain.models import AppConfig, SamplerConfig, SweepConfig

_SHIPPED_DEFAULT = Path(__file__).resolve().parents[1] / "config" / "default.yaml"


def _write(path: Path, data: dict) -> Path:
    with open(path, "w") as fh:
        yaml.dump(data, fh)
    return path


# =====================================================================
# AppConfig
# =====================================================================


class TestAppConfig:
    """Test configuration loading from YAML and environment variables."""

    def test_load_from_yaml(self, tmp_path):
        path = _write(tmp_path / "config.yaml", {"sampler": {"chain_length": 500}})
        cfg = AppConfig.load(default_path=str(path))
        assert cfg.get("sampler.chain_length") == 500

    def test_load_with_overlay(self, tmp_path):
        default = _write(tmp_path / "default.yaml", {"a": 1, "b": {"c": 2}})
        overlay = _write(tmp_path / "overlay.yaml", {"b": {"c": 99, "d": 3}})
        cfg = AppConfig.load(default_path=str(default), overlay_path=str(overlay))
        assert cfg.get("a") == 1
        assert cfg.get("b.c") == 99
        assert cfg.get("b.d") == 3

    def test_env_override_is_coerced(self, tmp_path, monkeypatch):
        path = _write(tmp_path / "config.yaml", {"sampler": {"chain_length": 2000}})
        monkeypatch.setenv("CGR_SAMPLER__CHAIN_LENGTH", "4000")
        monkeypatch.setenv("CGR_SAMPLER__TIMEOUT_S", "none")
        monkeypatch.setenv("CGR_ESTIMATION__ALPHA", "0.1")
        cfg = AppConfig.load(default_path=str(path))
        assert cfg.get("sampler.chain_length") == 4000
        assert cfg.get("sampler.timeout_s") is None
        assert cfg.get("estimation.alpha") == pytest.approx(0.1)

    def test_env_values_parsed_as_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CGR_SWEEP__N", "[50, 100]")
        monkeypatch.setenv("CGR_SAMPLER__TIMEOUT_S", "1e-6")
        monkeypatch.setenv("CGR_LOGGING__LEVEL", "debug")
        monkeypatch.setenv("CGR_SWEEP__SEED", "yes")
        cfg = AppConfig.load(default_path=str(tmp_path / "missing.yaml"))
        assert cfg.get("sweep.n") == [50, 100]
        assert cfg.get("sampler.timeout_s") == pytest.approx(1e-6)
        assert cfg.get("logging.level") == "debug"
        assert cfg.get("sweep.seed") is True

    def test_load_nonexistent_file(self, tmp_path):
        cfg = AppConfig.load(default_path=str(tmp_path / "missing.yaml"))
        assert cfg.data == {}

    def test_get_default_value(self):
        assert AppConfig(data={"a": 1}).get("missing.key", default="x") == "x"

    def test_section_missing_returns_empty(self):
        assert AppConfig(data={}).section("sweep") == {}


class TestShippedConfig:
    def test_default_yaml_has_sections(self):
        cfg = AppConfig.load(default_path=_SHIPPED_DEFAULT)
        for name in ("sampler", "prior", "estimation", "diagnostics", "sweep", "logging"):
            assert cfg.section(name), name
        assert cfg.get("prior.min_ln") == 4
        assert cfg.get("prior.max_ln") == 7
        assert cfg.get("diagnostics.ratio_cutoff") == pytest.approx(3.0)

    def test_slurm_overlay_selected_in_allocation(self, monkeypatch):
        monkeypatch.setenv("SLURM_JOB_ID", "123")
        cfg = get_typed_config(_SHIPPED_DEFAULT.parent)
        assert cfg.get("sampler.n_chains") == 4
        assert cfg.get("sweep.max_workers") == 16

    def test_local_uses_defaults(self, monkeypatch):
        monkeypatch.delenv("SLURM_JOB_ID", raising=False)
        cfg = get_typed_config(_SHIPPED_DEFAULT.parent)
        assert cfg.get("sampler.n_chains") == 1

    def test_platform_overlay_path(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SLURM_JOB_ID", raising=False)
        assert platform_overlay(tmp_path) is None
        monkeypatch.setenv("SLURM_JOB_ID", "7")
        assert platform_overlay(tmp_path) == tmp_path / "slurm.yaml"


# =====================================================================
# Typed configs
# =====================================================================


class TestTypedConfigs:
    def test_sampler_config_from_app_config(self):
        cfg = AppConfig(data={"sampler": {"n_chains": 3, "chain_length": 800, "unknown": 1}})
        sc = SamplerConfig.from_app_config(cfg, n_cores=2)
        assert sc.n_chains == 3
        assert sc.chain_length == 800
        assert sc.n_cores == 2

    def test_sampler_config_ignores_none_overrides(self):
        cfg = AppConfig(data={"sampler": {"n_chains": 3}})
        assert SamplerConfig.from_app_config(cfg, n_chains=None).n_chains == 3

    def test_sweep_config_from_app_config(self):
        cfg = AppConfig(data={
            "sampler": {"n_chains": 2, "chain_length": 1000},
            "estimation": {"alpha": 0.1},
            "diagnostics": {"ratio_cutoff": 2.5},
            "sweep": {"n": [50, 100], "birth_rate": 1.0, "methods": ["internal_lengths"]},
        })
        sc = SweepConfig.from_app_config(cfg, replicates=7)
        assert sc.n == (50, 100)
        assert sc.birth_rate == (1.0,)
        assert sc.methods == ("internal_lengths",)
        assert sc.n_chains == 2
        assert sc.chain_length == 1000
        assert sc.alpha == pytest.approx(0.1)
        assert sc.ratio_cutoff == pytest.approx(2.5)
        assert sc.replicates == 7

    def test_sweep_config_from_shipped_defaults(self):
        sc = SweepConfig.from_app_config(AppConfig.load(default_path=_SHIPPED_DEFAULT))
        assert sc.n == (100,)
        assert sc.methods == ("internal_lengths", "max_likelihood")
        assert sc.seed == 42

    def test_sweep_config_carries_sampler_and_prior(self):
        cfg = AppConfig(data={
            "sampler": {"chain_length": 600, "warmup_fraction": 0.25, "target_accept": 0.9},
            "prior": {"s_min": 0.01, "s_max": 2.0, "min_ln": 4.5},
        })
        sc = SweepConfig.from_app_config(cfg)
        assert sc.sampler_config == SamplerConfig(
            chain_length=600, warmup_fraction=0.25, target_accept=0.9,
        )
        assert sc.chain_length == 600
        assert sc.s_min == pytest.approx(0.01)
        assert sc.s_max == pytest.approx(2.0)
        assert sc.min_ln == pytest.approx(4.5)

    def test_env_override_reaches_sweep_sampler(self, monkeypatch):
        monkeypatch.delenv("SLURM_JOB_ID", raising=False)
        monkeypatch.setenv("CGR_SAMPLER__WARMUP_FRACTION", "0.9")
        monkeypatch.setenv("CGR_PRIOR__S_MAX", "2.5")
        sc = SweepConfig.from_app_config(get_typed_config(_SHIPPED_DEFAULT.parent))
        assert sc.sampler_config.warmup_fraction == pytest.approx(0.9)
        assert sc.sampler_config.target_accept == pytest.approx(0.8)
        assert sc.s_max == pytest.approx(2.5)


# =====================================================================
# Environment
# =====================================================================


class TestEnvironment:
    def test_detect_platform(self, monkeypatch):
        monkeypatch.delenv("SLURM_JOB_ID", raising=False)
        assert detect_platform() == "local"
        monkeypatch.setenv("SLURM_JOB_ID", "1")
        assert detect_platform() == "slurm"

    def test_cpu_count_honours_slurm(self, monkeypatch):
        monkeypatch.setenv("SLURM_CPUS_PER_TASK", "3")
        assert detect_cpu_count() == 3

    def test_cpu_count_positive(self, monkeypatch):
        monkeypatch.delenv("SLURM_CPUS_PER_TASK", raising=False)
        assert detect_cpu_count() >= 1

    def test_malformed_slurm_cpus_logged(self, monkeypatch, caplog):
        monkeypatch.setenv("SLURM_CPUS_PER_TASK", "four")
        with caplog.at_level("WARNING", logger="clonal_growth.config.environment"):
            assert detect_cpu_count() >= 1
        assert "SLURM_CPUS_PER_TASK" in caplog.text
