"""Tests for machine profiling.

Features:
- Available memory normalization (deterministic, idempotent)
- vm_stat parsing
- Profiling never fails: unreadable stats fall back to defaults
"""

from types import SimpleNamespace

import pytest

from renderfleet.config import Settings
from renderfleet.export import profiler as profiler_module
from renderfleet.export.profiler import MachineProfiler, normalize_available_memory, parse_vm_stat

GB = 1024 ** 3

VM_STAT_OUTPUT = """Mach Virtual Memory Statistics: (page size of 16384 bytes)
Pages free:                               10000.
Pages active:                            500000.
Pages inactive:                           20000.
Pages speculative:                         3000.
Pages throttled:                              0.
Pages wired down:                        150000.
Pages purgeable:                           1000.
"""


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


class TestNormalizeAvailableMemory:
    """Tests for normalize_available_memory."""

    def test_low_reading_raised_to_reserve_floor(self, settings):
        """A reading under the reserve is raised to it."""
        total = 16 * GB

        result = normalize_available_memory(GB // 10, total, platform="linux", settings=settings)

        assert result == int(total * settings.profiler_reserve_fraction)

    def test_healthy_reading_kept(self, settings):
        result = normalize_available_memory(8 * GB, 16 * GB, platform="linux", settings=settings)

        assert result == 8 * GB

    def test_clamped_to_total(self, settings):
        result = normalize_available_memory(20 * GB, 16 * GB, platform="linux", settings=settings)

        assert result == 16 * GB

    def test_darwin_prefers_vm_stat(self, settings):
        """Reclaimable pages counted by vm_stat beat the raw reading."""
        result = normalize_available_memory(
            2 * GB, 16 * GB, platform="darwin", vm_stat_bytes=6 * GB, settings=settings
        )

        assert result == 6 * GB

    def test_darwin_floor_is_larger(self, settings):
        darwin = normalize_available_memory(0, 8 * GB, platform="darwin", settings=settings)
        linux = normalize_available_memory(0, 8 * GB, platform="linux", settings=settings)

        assert darwin == int(1.5 * GB)
        assert linux == int(8 * GB * settings.profiler_reserve_fraction)
        assert darwin > linux

    def test_unknown_total_returns_raw(self, settings):
        assert normalize_available_memory(3 * GB, 0, platform="linux", settings=settings) == 3 * GB

    @pytest.mark.parametrize("platform", ["linux", "darwin", "win32"])
    @pytest.mark.parametrize("raw_gb", [0, 0.5, 1, 2, 7.5, 16, 40])
    def test_idempotent(self, settings, platform, raw_gb):
        """Re-normalizing a normalized value returns it unchanged."""
        total = 16 * GB
        vm_stat = 3 * GB if platform == "darwin" else None

        once = normalize_available_memory(
            int(raw_gb * GB), total, platform=platform, vm_stat_bytes=vm_stat, settings=settings
        )
        twice = normalize_available_memory(
            once, total, platform=platform, vm_stat_bytes=vm_stat, settings=settings
        )

        assert twice == once
        assert 0 <= once <= total


class TestParseVmStat:
    """Tests for parse_vm_stat."""

    def test_sums_reclaimable_pages(self):
        assert parse_vm_stat(VM_STAT_OUTPUT) == (10000 + 20000 + 3000 + 1000) * 16384

    def test_default_page_size(self):
        output = "Pages free: 100.\nPages inactive: 50.\n"

        assert parse_vm_stat(output) == 150 * 4096

    def test_unparseable_output(self):
        assert parse_vm_stat("garbage") is None


class TestMachineProfiler:
    """Tests for MachineProfiler.profile()."""

    @pytest.fixture(autouse=True)
    def no_probes(self, monkeypatch):
        """Keep host-specific probes out of the result."""
        monkeypatch.setattr(profiler_module, "get_container_memory_limit", lambda: None)
        monkeypatch.setattr(profiler_module, "get_darwin_available_memory_bytes", lambda: None)
        monkeypatch.setattr(profiler_module, "detect_gpu", lambda: False)

    def test_profile_reads_psutil(self, settings, monkeypatch):
        monkeypatch.setattr(profiler_module.psutil, "cpu_count", lambda logical=True: 12)
        monkeypatch.setattr(
            profiler_module.psutil,
            "virtual_memory",
            lambda: SimpleNamespace(total=32 * GB, available=20 * GB),
        )

        profile = MachineProfiler(settings).profile()

        assert profile.cpu_cores == 12
        assert profile.total_memory_gb == pytest.approx(32.0)
        assert profile.available_memory_gb == pytest.approx(20.0)
        assert profile.gpu_available is False

    def test_never_throws_when_stats_unreadable(self, settings, monkeypatch):
        """Unreadable stats fall back to conservative defaults."""

        def broken():
            raise OSError("no /proc")

        monkeypatch.setattr(profiler_module.psutil, "cpu_count", lambda logical=True: None)
        monkeypatch.setattr(profiler_module.os, "cpu_count", lambda: None)
        monkeypatch.setattr(profiler_module.psutil, "virtual_memory", broken)

        profile = MachineProfiler(settings).profile()

        assert profile.cpu_cores == settings.profiler_fallback_cpu_cores
        assert profile.total_memory_gb == pytest.approx(settings.profiler_fallback_memory_gb)
        assert 0 < profile.available_memory_gb <= profile.total_memory_gb

    def test_container_limit_caps_memory(self, settings, monkeypatch):
        monkeypatch.setattr(profiler_module, "get_container_memory_limit", lambda: 8 * GB)
        monkeypatch.setattr(profiler_module.psutil, "cpu_count", lambda logical=True: 8)
        monkeypatch.setattr(
            profiler_module.psutil,
            "virtual_memory",
            lambda: SimpleNamespace(total=32 * GB, available=28 * GB),
        )

        profile = MachineProfiler(settings).profile()

        assert profile.total_memory_gb == pytest.approx(8.0)
        assert profile.available_memory_gb == pytest.approx(4.0)

    def test_fresh_profile_each_call(self, settings, monkeypatch):
        readings = iter([10 * GB, 5 * GB])
        monkeypatch.setattr(profiler_module.psutil, "cpu_count", lambda logical=True: 8)
        monkeypatch.setattr(
            profiler_module.psutil,
            "virtual_memory",
            lambda: SimpleNamespace(total=16 * GB, available=next(readings)),
        )
        profiler = MachineProfiler(settings)

        first = profiler.profile()
        second = profiler.profile()

        assert first.available_memory_gb == pytest.approx(10.0)
        assert second.available_memory_gb == pytest.approx(5.0)
