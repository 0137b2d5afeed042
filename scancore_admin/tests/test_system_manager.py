import asyncio
import json
import os
import stat
import tempfile
import unittest
from pathlib import Path

from scancore_admin import system_manager, update_runner
from scancore_admin.commands import CommandError, CommandResult, run_command
from scancore_admin.config import SESSION_SECRET_PLACEHOLDER, STORE_PASSWORD_PLACEHOLDER, Settings
from scancore_admin.store import SqliteStore
from scancore_admin.update_state import UpdateStateManager

ENV_TEMPLATE = (
    f"NEXTAUTH_SECRET={SESSION_SECRET_PLACEHOLDER}\n"
    f"POSTGRES_PASSWORD={STORE_PASSWORD_PLACEHOLDER}\n"
    f"DATABASE_URL=postgresql://scancore:{STORE_PASSWORD_PLACEHOLDER}@db:5432/scancore\n"
)

DF_OUTPUT = (
    "Filesystem      Size  Used Avail Capacity Mounted on\n"
    "/dev/sda1        98G   41G   52G      45% /\n"
)


class FakeRunner:
    """Records commands; answers by command prefix, succeeding silently otherwise."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        joined = " ".join(cmd)
        for prefix, response in self.responses.items():
            if joined.startswith(prefix):
                if isinstance(response, Exception):
                    raise response
                return response
        return CommandResult(0, "", "")


class MissingRuntime(FakeRunner):
    async def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        raise CommandError(f"{cmd[0]}: No such file or directory")


class SystemManagerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.settings = Settings(
            workspace=self.root,
            data_dir=self.root / "data",
            docker_data_path=self.root / "docker-data",
        )
        self.store = SqliteStore(self.root / "scancore.db")
        self.state = UpdateStateManager(self.settings.update_state_path)

    def manager(self, runner):
        return system_manager.SystemManager(self.settings, self.store, runner=runner, update_state=self.state)


class ParsingTest(unittest.TestCase):
    def test_compose_ps_newline_delimited(self):
        output = "\n".join(
            json.dumps(entry)
            for entry in (
                {
                    "Service": "app",
                    "State": "running",
                    "Status": "Up 2 hours",
                    "Publishers": [
                        {"URL": "0.0.0.0", "TargetPort": 3000, "PublishedPort": 3000, "Protocol": "tcp"},
                        {"URL": "::", "TargetPort": 3000, "PublishedPort": 3000, "Protocol": "tcp"},
                    ],
                },
                {"Service": "db", "State": "exited", "Status": "Exited (0) 5 minutes ago", "Publishers": []},
                {"Service": "worker", "State": "restarting", "Status": "Restarting (1)"},
            )
        )
        containers = system_manager.parse_compose_ps(output)
        self.assertEqual([c.name for c in containers], ["app", "db", "worker"])
        self.assertEqual([c.status for c in containers], ["running", "stopped", "error"])
        self.assertEqual(containers[0].ports, ["3000:3000"])
        self.assertEqual(containers[0].uptime, "Up 2 hours")

    def test_compose_ps_json_array(self):
        output = json.dumps([{"Name": "scancore-db-1", "State": "running", "Status": "Up", "Publishers": None}])
        [container] = system_manager.parse_compose_ps(output)
        self.assertEqual(container.name, "scancore-db-1")
        self.assertEqual(container.ports, [])

    def test_compose_ps_empty_output(self):
        self.assertEqual(system_manager.parse_compose_ps("  \n"), [])

    def test_df_output(self):
        usage = system_manager.parse_df_output(DF_OUTPUT)
        self.assertEqual((usage.total, usage.used, usage.available), ("98G", "41G", "52G"))

    def test_df_output_rejects_garbage(self):
        with self.assertRaises(ValueError):
            system_manager.parse_df_output("df: ./docker-data: No such file or directory\n")


class SecretGenerationTest(unittest.TestCase):
    def test_alphabet_has_62_symbols(self):
        self.assertEqual(len(set(system_manager.SECRET_ALPHABET)), 62)

    def test_keys_have_requested_length_and_cover_alphabet(self):
        keys = [system_manager.generate_secure_key(32) for _ in range(200)]
        self.assertTrue(all(len(key) == 32 for key in keys))
        used = set("".join(keys))
        self.assertTrue(used <= set(system_manager.SECRET_ALPHABET))
        self.assertEqual(len(used), 62)

    def test_render_env_file_replaces_placeholders(self):
        content = system_manager.render_env_file(ENV_TEMPLATE)
        values = dict(line.split("=", 1) for line in content.splitlines())
        self.assertEqual(len(values["NEXTAUTH_SECRET"]), 32)
        self.assertEqual(len(values["POSTGRES_PASSWORD"]), 16)
        self.assertIn(f":{values['POSTGRES_PASSWORD']}@", values["DATABASE_URL"])
        self.assertNotIn(SESSION_SECRET_PLACEHOLDER, content)
        self.assertNotIn(STORE_PASSWORD_PLACEHOLDER, content)


class StatusTest(SystemManagerTestCase):
    async def test_status_without_container_runtime_degrades(self):
        status = await self.manager(MissingRuntime()).get_system_status()
        self.assertEqual(status.containers, [])
        self.assertEqual(status.disk_usage.total, "Unknown")
        self.assertEqual(status.disk_usage.available, "Unknown")
        health = {check.service: check for check in status.system_health}
        self.assertEqual(health["Database"].status, "healthy")
        self.assertEqual(health["Data Directory"].status, "unhealthy")

    async def test_status_with_running_stack(self):
        (self.settings.app_data_dir).mkdir(parents=True)
        ps = json.dumps({"Service": "app", "State": "running", "Status": "Up 3 minutes", "Publishers": []})
        runner = FakeRunner(
            {
                "docker compose ps": CommandResult(0, ps + "\n", ""),
                "df -hP": CommandResult(0, DF_OUTPUT, ""),
            }
        )
        status = await self.manager(runner).get_system_status()
        self.assertEqual([c.name for c in status.containers], ["app"])
        self.assertEqual(status.disk_usage.used, "41G")
        self.assertTrue(all(check.status == "healthy" for check in status.system_health))
        self.assertIn(["df", "-hP", str(self.settings.docker_data_path)], runner.calls)

    async def test_unreachable_store_is_unhealthy(self):
        self.store = SqliteStore(self.root / "missing" / "db.sqlite", create=False)
        checks = await self.manager(FakeRunner()).get_health_checks()
        self.assertEqual(checks[0].service, "Database")
        self.assertEqual(checks[0].status, "unhealthy")
        self.assertEqual(checks[0].message, "Database connection failed")


class ActionTest(SystemManagerTestCase):
    async def test_restart_success(self):
        runner = FakeRunner()
        result = await self.manager(runner).restart_system()
        self.assertTrue(result.success)
        self.assertEqual(runner.calls, [["docker", "compose", "restart"]])

    async def test_restart_failure_is_reported(self):
        runner = FakeRunner({"docker compose restart": CommandResult(1, "", "no configuration file provided")})
        result = await self.manager(runner).restart_system()
        self.assertFalse(result.success)
        self.assertIn("no configuration file provided", result.message)

    async def test_custom_compose_command(self):
        self.settings = self.settings.model_copy(update={"compose_command": "docker-compose -f prod.yml"})
        runner = FakeRunner()
        await self.manager(runner).restart_system()
        self.assertEqual(runner.calls, [["docker-compose", "-f", "prod.yml", "restart"]])

    async def test_busy_lock_rejects_second_operation(self):
        lock = asyncio.Lock()
        manager = system_manager.SystemManager(self.settings, self.store, runner=FakeRunner(), operation_lock=lock)
        async with lock:
            result = await manager.update_system()
        self.assertFalse(result.success)
        self.assertIn("already running", result.message)


class UpdateRolloutTest(SystemManagerTestCase):
    async def test_stages_run_in_order(self):
        runner = FakeRunner()
        result = await self.manager(runner).update_system()
        self.assertTrue(result.success)
        self.assertEqual(
            runner.calls,
            [
                ["git", "pull", "origin", "main"],
                ["docker", "compose", "down"],
                ["docker", "compose", "build"],
                ["docker", "compose", "up", "-d"],
            ],
        )
        state = self.state.read()
        self.assertEqual(state["status"], "idle")
        self.assertIsNotNone(state["last_success"])

    async def test_failing_pull_stops_rollout(self):
        stderr = "fatal: unable to access 'https://example.com/scancore.git/': Could not resolve host"
        runner = FakeRunner({"git pull": CommandResult(128, "", stderr)})
        result = await self.manager(runner).update_system()
        self.assertFalse(result.success)
        self.assertIn(stderr, result.message)
        self.assertIn("pull failed", result.message)
        self.assertEqual(runner.calls, [["git", "pull", "origin", "main"]])
        state = self.state.read()
        self.assertEqual(state["status"], "error")
        self.assertEqual(state["failed_stage"], "pull")

    async def test_failure_after_stop_warns_about_stopped_services(self):
        runner = FakeRunner({"docker compose build": CommandResult(1, "", "failed to solve: dockerfile parse error")})
        result = await self.manager(runner).update_system()
        self.assertFalse(result.success)
        self.assertIn("rebuild failed", result.message)
        self.assertIn("Services are stopped", result.message)
        self.assertNotIn(["docker", "compose", "up", "-d"], runner.calls)

    async def test_timeout_is_a_stage_failure(self):
        runner = FakeRunner({"docker compose down": CommandError("docker compose down: timed out after 900s")})
        result = await self.manager(runner).update_system()
        self.assertFalse(result.success)
        self.assertIn("stop failed", result.message)
        self.assertIn("timed out", result.message)
        self.assertEqual(len(runner.calls), 2)

    async def test_rollout_recorded_by_another_process_blocks_update(self):
        self.state.merge(status="running", update_in_progress=True, job_started=system_manager._now_utc_iso())
        runner = FakeRunner()
        result = await self.manager(runner).update_system()
        self.assertFalse(result.success)
        self.assertEqual(result.message, system_manager.BUSY_MESSAGE)
        self.assertEqual(runner.calls, [])

    async def test_stale_in_progress_state_does_not_block_update(self):
        self.state.merge(status="running", update_in_progress=True, job_started="2020-01-01T00:00:00Z")
        runner = FakeRunner()
        result = await self.manager(runner).update_system()
        self.assertTrue(result.success)
        self.assertEqual(len(runner.calls), len(system_manager.ROLLOUT_STAGES))
        self.assertFalse(self.state.read()["update_in_progress"])
        self.assertEqual([p.name for p in self.settings.data_dir.iterdir()], ["update_state.json"])


class EnvFileTest(SystemManagerTestCase):
    async def test_second_call_refuses_and_keeps_file(self):
        self.settings.env_template.write_text(ENV_TEMPLATE, encoding="utf-8")
        manager = self.manager(FakeRunner())
        first = await manager.create_env_file()
        self.assertTrue(first.success)
        written = self.settings.env_file.read_text(encoding="utf-8")
        second = await manager.create_env_file()
        self.assertFalse(second.success)
        self.assertEqual(second.message, ".env file already exists")
        self.assertEqual(self.settings.env_file.read_text(encoding="utf-8"), written)
        if os.name == "posix":
            mode = stat.S_IMODE(self.settings.env_file.stat().st_mode)
            self.assertEqual(mode, 0o600)

    async def test_missing_template_fails(self):
        result = await self.manager(FakeRunner()).create_env_file()
        self.assertFalse(result.success)
        self.assertTrue(result.message.startswith("Failed to create .env file"))
        self.assertFalse(self.settings.env_file.exists())


class UpdateRunnerTest(unittest.TestCase):
    def test_refuses_workspace_without_checkout(self):
        with tempfile.TemporaryDirectory() as tmp:
            code = update_runner.run_update(["--workspace", tmp, "--data-dir", tmp])
        self.assertEqual(code, 2)


class RunCommandTest(unittest.IsolatedAsyncioTestCase):
    async def test_missing_binary_raises_command_error(self):
        with self.assertRaises(CommandError):
            await run_command(["scancore-definitely-not-installed"], timeout=5)

    async def test_timeout_kills_process(self):
        with self.assertRaises(CommandError) as ctx:
            await run_command(["sleep", "5"], timeout=0.2)
        self.assertIn("timed out", str(ctx.exception))

    async def test_nonzero_exit_is_returned(self):
        result = await run_command(["sh", "-c", "echo oops >&2; exit 3"], timeout=5)
        self.assertEqual(result.returncode, 3)
        self.assertEqual(result.output, "oops")


if __name__ == "__main__":
    unittest.main()
