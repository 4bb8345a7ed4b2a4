import os
import sys
import time
import pytest
import yaml
from pathlib import Path
from sdz.config.models import AppConfig
from sdz.infrastructure.event_bus import EventBus

# ============================================================================
# Fake libvips command line
# ============================================================================

# Stand-in for `vips` / `vipsheader`, driven by environment variables:
#   FAKE_VIPS_FAIL=transform|tile   exit 1 with a message on stderr
#   FAKE_VIPS_HANG=transform|tile   print a little progress, then sleep
#   FAKE_VIPS_HANG=header           vipsheader never returns
#   FAKE_VIPS_STEP_DELAY=<seconds>  delay between progress lines
#   FAKE_VIPS_LOG=<file>            append one line per invocation
FAKE_VIPS_SCRIPT = r'''
import os
import sys
import time

def log(op):
    path = os.environ.get("FAKE_VIPS_LOG")
    if path:
        with open(path, "a") as f:
            f.write(op + " " + " ".join(sys.argv[1:]) + "\n")

def progress(name, stop=100):
    delay = float(os.environ.get("FAKE_VIPS_STEP_DELAY", "0"))
    for pct in range(0, stop + 1, 10):
        print(f"{name}: {pct}% complete", flush=True)
        if delay:
            time.sleep(delay)

def main():
    args = sys.argv[1:]
    if args and args[0] == "header":
        log("header")
        if os.environ.get("FAKE_VIPS_HANG") == "header":
            time.sleep(60)
        print("width: 4096")
        print("height: 2048")
        print("bands: 3")
        return 0

    op = args[0]
    log(op)
    if os.environ.get("FAKE_VIPS_FAIL") == ("transform" if op == "icc_transform" else "tile"):
        print(f"vips: {op} failed: fake failure", file=sys.stderr, flush=True)
        return 1
    if os.environ.get("FAKE_VIPS_HANG") == ("transform" if op == "icc_transform" else "tile"):
        progress(op, stop=20)
        time.sleep(60)
        return 0

    if op == "icc_transform":
        src, dst = args[1], args[2]
        with open(src, "rb") as f:
            data = f.read()
        progress(os.path.basename(src))
        with open(dst, "wb") as f:
            f.write(data)
        return 0

    if op == "dzsave":
        src, base = args[1], args[2]
        if not os.path.exists(src):
            print(f"dzsave: unable to open {src}", file=sys.stderr)
            return 1
        tiles = base + "_files"
        os.makedirs(os.path.join(tiles, "0"), exist_ok=True)
        with open(os.path.join(tiles, "0", "0_0.jpg"), "wb") as f:
            f.write(b"\xff\xd8\xff")
        progress(os.path.basename(src))
        with open(base + ".dzi", "w") as f:
            f.write('<?xml version="1.0"?><Image TileSize="256" Overlap="1" Format="jpg"/>')
        return 0

    print(f"unknown operation {op}", file=sys.stderr)
    return 2

sys.exit(main())
'''


@pytest.fixture
def fake_vips(tmp_path):
    """Writes the fake vips script; returns tools settings that invoke it."""
    script = tmp_path / "fake_vips.py"
    script.write_text(FAKE_VIPS_SCRIPT)
    return {
        "vips_command": [sys.executable, str(script)],
        "header_command": [sys.executable, str(script), "header"],
    }


@pytest.fixture
def vips_log(tmp_path, monkeypatch):
    """Records fake vips invocations; returns a reader for the recorded lines."""
    log_file = tmp_path / "vips_calls.log"
    monkeypatch.setenv("FAKE_VIPS_LOG", str(log_file))

    def read():
        if not log_file.exists():
            return []
        return log_file.read_text().splitlines()

    return read

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def slides_dir(tmp_path):
    d = tmp_path / "slides"
    d.mkdir()
    return d


@pytest.fixture
def dzi_dir(tmp_path):
    return tmp_path / "dzi"


@pytest.fixture
def work_dir(tmp_path):
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def sample_config(slides_dir, dzi_dir, work_dir, fake_vips):
    """Fast AppConfig wired to the fake vips tool and temporary directories."""
    return AppConfig(
        watch={
            "watch_root": str(slides_dir),
            "output_root": str(dzi_dir),
            "stability_window_s": 0.2,
            "poll_interval_s": 0.05,
            "min_file_age_s": 0.0,
            "recheck_delay_s": 0.2,
        },
        pool={
            "max_concurrency": 2,
            "max_retries": 2,
            "retry_delay_s": 0.05,
            "kill_grace_s": 1.0,
        },
        tools={
            **fake_vips,
            "thread_budget": 4,
            "progress_interval_s": 0.0,
            "intermediate_dir": str(work_dir),
        },
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "sdz.yaml"

    content = {
        "general": {"debug": True},
        "watch": {
            "watch_root": str(tmp_path / "slides"),
            "output_root": str(tmp_path / "dzi"),
            "extensions": ["svs", ".NDPI"],
            "stability_window_s": 15,
        },
        "pool": {"max_concurrency": 3, "max_retries": 1},
        "tools": {"thread_budget": 12, "jpeg_quality": 85},
    }

    with open(conf_file, "w") as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance; closed after the test."""
    bus = EventBus()
    yield bus
    bus.close()


@pytest.fixture
def sync_bus():
    """EventBus delivering inline, for tests that inspect events right away."""
    return EventBus(synchronous=True)


@pytest.fixture
def recorder():
    """Collects events; subscribe with bus.subscribe_all(recorder)."""

    class Recorder(list):
        def __call__(self, event):
            self.append(event)

        def of(self, event_type):
            return [e for e in list(self) if isinstance(e, event_type)]

        def names(self, task_key=None):
            return [
                type(e).__name__
                for e in list(self)
                if task_key is None or getattr(e, "task_key", None) == task_key
            ]

    return Recorder()

# ============================================================================
# File System Helpers
# ============================================================================

def _make_slide(path: Path, size: int = 2048, age_s: float = 60.0) -> Path:
    """Writes a dummy slide and backdates its mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"II*\x00" + b"\x00" * size)
    stamp = time.time() - age_s
    os.utime(path, (stamp, stamp))
    return path


def _wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def slide_factory(slides_dir):
    def _make(relative: str, **kwargs) -> Path:
        return _make_slide(slides_dir / relative, **kwargs)

    return _make


@pytest.fixture
def make_slide():
    """Writes a slide anywhere: make_slide(path, size=..., age_s=...)."""
    return _make_slide


@pytest.fixture
def wait_for():
    """Polls a predicate until it is true or the timeout expires."""
    return _wait_for
