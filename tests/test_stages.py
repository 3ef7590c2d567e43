import subprocess

import pytest

from livecreate.errors import CreatorError, StageError
from livecreate.stages import Stage, StageExecutor, script_action


def test_run_calls_action_with_root(tmp_path):
    seen = []
    StageExecutor().run(Stage("noop", seen.append), str(tmp_path))
    assert seen == [str(tmp_path)]


def test_precondition_not_met(tmp_path):
    called = []
    stage = Stage("bootloader", called.append,
                  precondition=lambda root: False)

    with pytest.raises(StageError) as e:
        StageExecutor().run(stage, str(tmp_path))

    assert e.value.stage == "bootloader"
    assert e.value.cause == "precondition not met"
    assert called == []


@pytest.mark.parametrize("error", [
    CreatorError("apt-get failed"),
    OSError(2, "No such file or directory"),
    subprocess.CalledProcessError(100, ["apt-get", "install"]),
])
def test_failures_are_wrapped(tmp_path, error):
    def action(root):
        raise error

    with pytest.raises(StageError) as e:
        StageExecutor().run(Stage("provision", action), str(tmp_path))

    assert e.value.stage == "provision"
    assert e.value.cause is error
    assert "Stage 'provision' failed" in str(e.value)


def test_stage_errors_pass_through(tmp_path):
    inner = StageError("compress", "too small")

    def action(root):
        raise inner

    with pytest.raises(StageError) as e:
        StageExecutor().run(Stage("other", action), str(tmp_path))
    assert e.value is inner


def test_interrupt_is_not_wrapped(tmp_path):
    def action(root):
        raise KeyboardInterrupt()

    with pytest.raises(KeyboardInterrupt):
        StageExecutor().run(Stage("provision", action), str(tmp_path))


def test_nochroot_script_gets_install_root(tmp_path):
    action = script_action('echo "$INSTALL_ROOT $LIVE_ROOT" > "$INSTALL_ROOT/marker"\n',
                           "/bin/sh", in_chroot=False,
                           env={"LIVE_ROOT": "/live"})
    action(str(tmp_path))

    assert (tmp_path / "marker").read_text() == "%s /live\n" % tmp_path
    # the temporary script is removed again
    assert list((tmp_path / "tmp").iterdir()) == []


def test_failing_nochroot_script(tmp_path):
    action = script_action("exit 3\n", "/bin/sh", in_chroot=False)
    with pytest.raises(subprocess.CalledProcessError):
        action(str(tmp_path))
