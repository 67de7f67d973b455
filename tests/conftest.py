import json
import subprocess
from pathlib import Path

import pytest


def write_param_json(root: Path, data) -> Path:
    sce_sys = root / "sce_sys"
    sce_sys.mkdir(parents=True, exist_ok=True)
    path = sce_sys / "param.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def param_data(title_id="CUSA12345", title_name="My Game!", language="en-US"):
    return {
        "titleId": title_id,
        "localizedParameters": {
            "defaultLanguage": language,
            language: {"titleName": title_name},
        },
    }


def probe_message(source, size):
    return f"makefs: `{source}' size of {size} is larger than the maxsize of 4096.\n"


class FakeMakefs:
    """
    Stand-in for subprocess.run when the image builder is invoked.

    sizes maps block size -> reported image size (None prints unrelated
    output). The final build writes a small file to the output path and
    exits with final_rc.
    """

    def __init__(self, sizes, final_rc=0):
        self.sizes = sizes
        self.final_rc = final_rc
        self.calls = []

    def __call__(self, cmd, *args, **kwargs):
        self.calls.append(list(cmd))
        if "-s" in cmd:
            opts = cmd[cmd.index("-o") + 1]
            block_size = int(opts.split(",")[0].split("=")[1])
            size = self.sizes.get(block_size)
            out = probe_message(cmd[-1], size) if size is not None else "makefs: something else happened\n"
            return subprocess.CompletedProcess(cmd, 1, stdout=out, stderr=None)
        Path(cmd[-2]).write_bytes(b"\0" * 16)
        return subprocess.CompletedProcess(cmd, self.final_rc)

    @property
    def final_calls(self):
        return [c for c in self.calls if "-Z" in c]


@pytest.fixture
def dump_dir(tmp_path):
    root = tmp_path / "dump"
    root.mkdir()
    write_param_json(root, param_data())
    (root / "eboot.bin").write_bytes(b"\0" * 100)
    return root


@pytest.fixture
def fake_builder(tmp_path):
    path = tmp_path / "bin" / "makefs"
    path.parent.mkdir()
    path.write_text("#!/bin/sh\nexit 1\n")
    path.chmod(0o755)
    return path


class FakeFuseArchive:
    """
    Stand-in for subprocess.Popen(fuse-archive ...).

    populate: callable(mount_dir) run at start to simulate the archive
        content appearing (None: the mount never becomes ready).
    exit_code: if set, the process "dies" immediately with that code.
    """

    def __init__(self, populate=None, exit_code=None):
        self.populate = populate
        self.exit_code = exit_code
        self.cmd = None

    def __call__(self, cmd, *args, **kwargs):
        self.cmd = cmd
        self.returncode = self.exit_code
        self.terminated = False
        self.killed = False
        if self.populate is not None:
            self.populate(Path(cmd[-1]))
        return self

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode
