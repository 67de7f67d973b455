import subprocess
from pathlib import Path

import pytest

from conftest import FakeFuseArchive, FakeMakefs, param_data, write_param_json
from ufs2img import archive_mount, cli, makefs_runner
from ufs2img.config import CONFIG_ENV_VAR
from ufs2img.errors import ConfigError, LabelError

SIZES = {4096: 9000, 8192: 7000, 16384: 7000, 32768: 8000, 65536: None}


@pytest.fixture(autouse=True)
def no_env_config(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)


@pytest.fixture
def no_tools(monkeypatch):
    """Fail the test if any external process is started."""
    def forbidden(*args, **kwargs):
        raise AssertionError(f"external tool invoked: {args[0] if args else kwargs}")
    monkeypatch.setattr(subprocess, "run", forbidden)
    monkeypatch.setattr(subprocess, "Popen", forbidden)


@pytest.fixture
def makefs(monkeypatch):
    def install(sizes=SIZES, final_rc=0):
        fake = FakeMakefs(sizes, final_rc=final_rc)
        monkeypatch.setattr(makefs_runner.subprocess, "run", fake)
        return fake
    return install


@pytest.fixture
def out_dir(tmp_path):
    d = tmp_path / "output"
    d.mkdir()
    return d


def _main(argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([str(a) for a in argv])
    return excinfo.value.code


def _args(*argv):
    return cli.build_argparser().parse_args([str(a) for a in argv])


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------

def test_no_arguments_prints_usage(no_tools, capsys):
    assert _main([]) != 0
    assert "usage:" in capsys.readouterr().err


def test_missing_output(no_tools, dump_dir, capsys):
    assert _main(["-i", dump_dir]) != 0
    err = capsys.readouterr().err
    assert "usage:" in err
    assert "-o/--output" in err


@pytest.mark.parametrize("label", ["ThisLabelIsTooLong", "bad label", "semi;colon"])
def test_invalid_label_rejected_before_tools(no_tools, dump_dir, out_dir, fake_builder, label):
    code = _main(["-i", dump_dir, "-o", "game.img", "-l", label,
                  "--output-dir", out_dir, "--makefs", fake_builder, "-y"])
    assert code == 1
    assert list(out_dir.iterdir()) == []


def test_invalid_label_raises_in_run(no_tools, dump_dir, out_dir):
    with pytest.raises(LabelError):
        cli.run(_args("-i", dump_dir, "-o", "x.img", "-l", "X" * 17, "--output-dir", out_dir))


def test_missing_output_dir(no_tools, dump_dir, tmp_path, fake_builder):
    code = _main(["-i", dump_dir, "-o", "game.img", "--output-dir", tmp_path / "nope",
                  "--makefs", fake_builder, "-y"])
    assert code == 1


def test_nonexistent_input(no_tools, tmp_path, out_dir, fake_builder):
    code = _main(["-i", tmp_path / "missing", "-o", "game.img", "--output-dir", out_dir,
                  "--makefs", fake_builder, "-y"])
    assert code == 1


def test_missing_builder(no_tools, dump_dir, out_dir, tmp_path):
    code = _main(["-i", dump_dir, "-o", "game.img", "--output-dir", out_dir,
                  "--makefs", tmp_path / "no" / "makefs", "-y"])
    assert code == 1


# ---------------------------------------------------------------------------
# Directory input
# ---------------------------------------------------------------------------

def test_directory_build(makefs, dump_dir, out_dir, fake_builder, capsys):
    fake = makefs()
    code = _main(["-i", dump_dir, "-o", "game.img", "--output-dir", out_dir,
                  "--makefs", fake_builder, "-y"])
    assert code == 0

    output = out_dir / "game.img"
    assert output.exists()
    assert fake.final_calls == [[
        str(fake_builder), "-b", "0", "-Z", "-o", "b=8192,f=1024,m=0,v=2,o=space,l=12345MyGame",
        str(out_dir / ".game.img.partial"), str(dump_dir.resolve()),
    ]]

    out = capsys.readouterr().out
    assert "Detected game title: My Game!, ID: CUSA12345" in out
    assert "The filesystem label will be: 12345MyGame" in out
    assert "block size for smallest image: 8192, fragment size: 1024" in out
    assert "7000 bytes (~ 0.0 GB)" in out
    assert "eboot.bin" in out
    assert "sce_sys/" in out
    assert "-y is set, skipping confirmation prompt." in out


def test_explicit_label(makefs, dump_dir, out_dir, fake_builder):
    fake = makefs()
    code = _main(["-i", dump_dir, "-o", "game.img", "-l", "MY_GAME-1.0", "--output-dir", out_dir,
                  "--makefs", fake_builder, "-y"])
    assert code == 0
    assert "l=MY_GAME-1.0" in fake.final_calls[0][5]


def test_no_label_when_title_has_no_alnum(makefs, tmp_path, out_dir, fake_builder):
    src = tmp_path / "dump"
    write_param_json(src, param_data(title_id="----", title_name="!!!"))
    fake = makefs()
    assert _main(["-i", src, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder, "-y"]) == 0
    assert ",l=" not in fake.final_calls[0][5]


def test_dry_run(makefs, dump_dir, out_dir, fake_builder):
    fake = makefs()
    code = _main(["-i", dump_dir, "-o", "game.img", "--output-dir", out_dir,
                  "--makefs", fake_builder, "--dry-run"])
    assert code == 0
    assert fake.final_calls == []
    assert len(fake.calls) == 5
    assert not (out_dir / "game.img").exists()


def test_prompt_declined(makefs, dump_dir, out_dir, fake_builder, capsys):
    fake = makefs()
    args = _args("-i", dump_dir, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder)
    assert cli.run(args, input_func=lambda prompt: "n") == 1
    assert fake.final_calls == []
    assert "Aborted by user." in capsys.readouterr().out


def test_prompt_reasks_until_valid(makefs, dump_dir, out_dir, fake_builder, capsys):
    fake = makefs()
    answers = iter(["maybe", "", "Y"])
    args = _args("-i", dump_dir, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder)
    assert cli.run(args, input_func=lambda prompt: next(answers)) == 0
    assert len(fake.final_calls) == 1
    assert capsys.readouterr().out.count("Invalid input. Please enter Y or N.") == 2


def test_confirm_eof_aborts():
    def eof(prompt):
        raise EOFError
    assert cli.confirm(eof) is False


def test_metadata_error_stops_before_probe(makefs, tmp_path, out_dir, fake_builder):
    src = tmp_path / "dump"
    write_param_json(src, {"titleId": "PPSA00001"})
    fake = makefs()
    assert _main(["-i", src, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder, "-y"]) == 1
    assert fake.calls == []


def test_probe_failure(makefs, dump_dir, out_dir, fake_builder):
    makefs(sizes={})
    assert _main(["-i", dump_dir, "-o", "game.img", "--output-dir", out_dir,
                  "--makefs", fake_builder, "-y"]) == 1
    assert not (out_dir / "game.img").exists()


def test_final_build_failure_leaves_no_output(makefs, dump_dir, out_dir, fake_builder):
    makefs(final_rc=1)
    assert _main(["-i", dump_dir, "-o", "game.img", "--output-dir", out_dir,
                  "--makefs", fake_builder, "-y"]) == 1
    assert not (out_dir / "game.img").exists()


def test_config_file_supplies_defaults(makefs, dump_dir, out_dir, fake_builder, tmp_path, monkeypatch):
    cfg = tmp_path / "ufs2img.yaml"
    cfg.write_text(f"makefs: {fake_builder}\noutput_dir: {out_dir}\n")
    monkeypatch.setenv(CONFIG_ENV_VAR, str(cfg))
    makefs()
    assert _main(["-i", dump_dir, "-o", "game.img", "-y"]) == 0
    assert (out_dir / "game.img").exists()


# ---------------------------------------------------------------------------
# Archive input
# ---------------------------------------------------------------------------

@pytest.fixture
def archive_env(monkeypatch, tmp_path):
    """Archive file plus a config pointing the FUSE device at a dummy file."""
    archive = tmp_path / "game.7z"
    archive.write_bytes(b"7z")
    device = tmp_path / "fuse"
    device.write_text("")
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text(f"fuse_device: {device}\n")
    monkeypatch.setattr(archive_mount.shutil, "which", lambda name: f"/usr/bin/{name}")
    return archive, cfg


def test_archive_nested_dump(makefs, archive_env, out_dir, fake_builder, monkeypatch):
    archive, cfg = archive_env
    fuse = FakeFuseArchive(populate=lambda d: write_param_json(d / "PPSA01234", param_data()))
    monkeypatch.setattr(archive_mount.subprocess, "Popen", fuse)
    fake = makefs()

    code = _main(["-i", archive, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder,
                  "--config", cfg, "-y"])
    assert code == 0

    mount_dir = Path(fuse.cmd[-1])
    assert fake.final_calls[0][-1] == str(mount_dir / "PPSA01234")
    assert fuse.terminated
    assert not mount_dir.exists()


def test_archive_mount_timeout(makefs, archive_env, out_dir, fake_builder, monkeypatch):
    archive, cfg = archive_env
    fuse = FakeFuseArchive()
    monkeypatch.setattr(archive_mount.subprocess, "Popen", fuse)
    fake = makefs()

    code = _main(["-i", archive, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder,
                  "--config", cfg, "--mount-timeout", "0.05", "-y"])
    assert code == 1
    assert fake.calls == []
    assert fuse.terminated
    assert list(out_dir.iterdir()) == []


def test_archive_without_dump(makefs, archive_env, out_dir, fake_builder, monkeypatch):
    archive, cfg = archive_env
    fuse = FakeFuseArchive(populate=lambda d: (d / "random.txt").write_text("x"))
    monkeypatch.setattr(archive_mount.subprocess, "Popen", fuse)
    fake = makefs()

    code = _main(["-i", archive, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder,
                  "--config", cfg, "-y"])
    assert code == 1
    assert fake.calls == []
    assert fuse.terminated


def test_mount_point_that_cannot_be_created(archive_env, out_dir, fake_builder, tmp_path, monkeypatch):
    archive, cfg = archive_env
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    cfg.write_text(cfg.read_text() + f"mount_point: {blocker / 'mnt'}\n")
    fuse = FakeFuseArchive()
    monkeypatch.setattr(archive_mount.subprocess, "Popen", fuse)

    code = _main(["-i", archive, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder,
                  "--config", cfg, "-y"])
    assert code == 1
    assert fuse.cmd is None


# ---------------------------------------------------------------------------
# Output location and timeout checks
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("timeout", ["nan", "inf", "0", "-5"])
def test_bad_mount_timeout(no_tools, dump_dir, out_dir, fake_builder, timeout):
    code = _main(["-i", dump_dir, "-o", "game.img", "--output-dir", out_dir, "--makefs", fake_builder,
                  "--mount-timeout", timeout, "-y"])
    assert code == 1
    assert list(out_dir.iterdir()) == []


@pytest.mark.parametrize("name", ["../game.img", "/tmp/game.img", "sub/game.img", "..", ".", "a\\b.img"])
def test_output_must_stay_in_output_dir(no_tools, dump_dir, out_dir, fake_builder, name):
    code = _main(["-i", dump_dir, "-o", name, "--output-dir", out_dir, "--makefs", fake_builder, "-y"])
    assert code == 1
    assert list(out_dir.iterdir()) == []
    assert not (out_dir.parent / "game.img").exists()


def test_checked_output_name():
    assert cli.checked_output_name("game.img") == "game.img"
    with pytest.raises(ConfigError):
        cli.checked_output_name("")


def test_failed_build_keeps_previous_image(makefs, dump_dir, out_dir, fake_builder):
    previous = out_dir / "game.img"
    previous.write_bytes(b"previous image")
    makefs(final_rc=1)
    assert _main(["-i", dump_dir, "-o", "game.img", "--output-dir", out_dir,
                  "--makefs", fake_builder, "-y"]) == 1
    assert previous.read_bytes() == b"previous image"
    assert list(out_dir.iterdir()) == [previous]
