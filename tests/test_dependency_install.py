import json
import sys

import pytest

from mcp_create_server import (
    BuildError,
    DependencyInstaller,
    Language,
    ProcessOutput,
    run_process,
)


class RecordingRunner:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def __call__(self, argv, *, cwd, env=None, label):
        self.calls.append({"argv": list(argv), "cwd": cwd, "label": label})
        if self.error is not None:
            raise self.error
        return ProcessOutput(0, "", "")


def _write_host_manifest(app_dir):
    app_dir.mkdir()
    (app_dir / "package.json").write_text(
        json.dumps(
            {
                "dependencies": {
                    "@modelcontextprotocol/sdk": "^1.0.0",
                    "mcp": "0.1.0",
                    "express": "^4.0.0",
                }
            }
        ),
        encoding="utf-8",
    )


@pytest.mark.asyncio
async def test_node_manifest_is_seeded_with_protocol_packages(tmp_path):
    app_dir = tmp_path / "app"
    _write_host_manifest(app_dir)
    sandbox = tmp_path / "sandbox"
    sandbox.mkdir()
    runner = RecordingRunner()
    installer = DependencyInstaller(app_dir=app_dir, runner=runner)

    await installer.install(sandbox, Language.TYPESCRIPT, {"axios": "^1.6.0"})

    manifest = json.loads((sandbox / "package.json").read_text(encoding="utf-8"))
    assert manifest["name"] == "mcp-dynamic-server"
    assert manifest["type"] == "module"
    assert manifest["dependencies"] == {
        "@modelcontextprotocol/sdk": "^1.0.0",
        "mcp": "0.1.0",
        "axios": "^1.6.0",
    }
    assert len(runner.calls) == 1
    assert runner.calls[0]["argv"][-1] == "install"
    assert runner.calls[0]["cwd"] == sandbox
    assert runner.calls[0]["label"] == "npm install"


@pytest.mark.asyncio
async def test_caller_versions_win_and_javascript_stays_commonjs(tmp_path):
    app_dir = tmp_path / "app"
    _write_host_manifest(app_dir)
    sandbox = tmp_path / "sandbox"
    sandbox.mkdir()
    installer = DependencyInstaller(app_dir=app_dir, runner=RecordingRunner())

    await installer.install(
        sandbox, Language.JAVASCRIPT, {"@modelcontextprotocol/sdk": "1.2.3"}
    )

    manifest = json.loads((sandbox / "package.json").read_text(encoding="utf-8"))
    assert "type" not in manifest
    assert manifest["dependencies"]["@modelcontextprotocol/sdk"] == "1.2.3"


@pytest.mark.asyncio
async def test_missing_host_manifest_is_tolerated(tmp_path):
    sandbox = tmp_path / "sandbox"
    sandbox.mkdir()
    installer = DependencyInstaller(app_dir=tmp_path / "missing", runner=RecordingRunner())

    await installer.install(sandbox, Language.JAVASCRIPT, {"lodash": "^4.17.21"})

    manifest = json.loads((sandbox / "package.json").read_text(encoding="utf-8"))
    assert manifest["dependencies"] == {"lodash": "^4.17.21"}


@pytest.mark.asyncio
async def test_python_requirements_install_into_sandbox(tmp_path):
    sandbox = tmp_path / "sandbox"
    sandbox.mkdir()
    runner = RecordingRunner()
    installer = DependencyInstaller(
        app_dir=tmp_path, python=sys.executable, runner=runner
    )

    await installer.install(sandbox, Language.PYTHON, {"requests": ">=2.31", "rich": ""})

    requirements = (sandbox / "requirements.txt").read_text(encoding="utf-8")
    assert requirements.splitlines() == ["requests>=2.31", "rich"]
    argv = runner.calls[0]["argv"]
    assert argv[1:3] == ["-m", "pip"]
    assert argv[3:] == ["install", "--target", "site-packages", "-r", "requirements.txt"]
    assert runner.calls[0]["label"] == "pip install"


@pytest.mark.asyncio
async def test_empty_dependencies_do_nothing(tmp_path):
    runner = RecordingRunner()
    installer = DependencyInstaller(app_dir=tmp_path, runner=runner)

    await installer.install(tmp_path, Language.PYTHON, {})

    assert runner.calls == []
    assert not (tmp_path / "requirements.txt").exists()


@pytest.mark.asyncio
async def test_installer_failure_propagates(tmp_path):
    runner = RecordingRunner(error=BuildError("npm install failed with code 1", exit_code=1))
    installer = DependencyInstaller(app_dir=tmp_path, runner=runner)

    with pytest.raises(BuildError) as excinfo:
        await installer.install(tmp_path, Language.JAVASCRIPT, {"left-pad": "1.0.0"})
    assert excinfo.value.exit_code == 1


@pytest.mark.asyncio
async def test_run_process_reports_exit_code_and_output(tmp_path):
    argv = [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"]

    with pytest.raises(BuildError) as excinfo:
        await run_process(argv, cwd=tmp_path, label="pip install")

    assert excinfo.value.exit_code == 3
    assert "boom" in excinfo.value.stderr
    assert str(excinfo.value) == "pip install failed with code 3"


@pytest.mark.asyncio
async def test_run_process_returns_captured_output(tmp_path):
    result = await run_process(
        [sys.executable, "-c", "print('compiled')"], cwd=tmp_path, label="compile"
    )
    assert result.returncode == 0
    assert result.stdout.strip() == "compiled"


@pytest.mark.asyncio
async def test_run_process_missing_executable(tmp_path):
    with pytest.raises(BuildError, match="could not be started"):
        await run_process(
            [str(tmp_path / "no-such-tool")], cwd=tmp_path, label="npm install"
        )
