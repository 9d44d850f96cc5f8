"""
Tests for the demo CLI using the in-memory backend.
"""

from typer.testing import CliRunner

from cacheguard.demo import app

runner = CliRunner()


class TestDemoCommands:

    def test_stampede_loads_once(self):
        result = runner.invoke(app, ["stampede", "--requests", "20", "--loader-delay", "20"])
        assert result.exit_code == 0, result.output
        assert "Loader calls: 1 for 20 requests" in result.output

    def test_stampede_without_coalescing(self):
        result = runner.invoke(
            app, ["stampede", "--requests", "10", "--loader-delay", "20", "--no-coalesce"]
        )
        assert result.exit_code == 0, result.output
        assert "Loader calls: 1 for 10 requests" in result.output

    def test_stampede_rejects_unknown_policy(self):
        result = runner.invoke(app, ["stampede", "--requests", "2", "--policy", "forever"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_stampede_reads_settings_from_env(self):
        result = runner.invoke(
            app,
            ["stampede", "--requests", "5", "--loader-delay", "10"],
            env={"CACHEGUARD_CONTENTION_POLICY": "wait", "CACHEGUARD_COALESCE_LOCAL": "false"},
        )
        assert result.exit_code == 0, result.output
        assert "backend=memory policy=wait coalesce=false" in result.output

    def test_command_line_overrides_env(self):
        result = runner.invoke(
            app,
            ["stampede", "--requests", "3", "--loader-delay", "10", "--policy", "fail"],
            env={"CACHEGUARD_CONTENTION_POLICY": "wait"},
        )
        assert result.exit_code == 0, result.output
        assert "policy=fail" in result.output

    def test_stampede_with_bloom_filter_and_circuit_breaker(self):
        result = runner.invoke(
            app,
            ["stampede", "--requests", "10", "--loader-delay", "10"],
            env={"CACHEGUARD_BLOOM_ENABLED": "true", "CACHEGUARD_CIRCUIT_BREAKER_ENABLED": "true"},
        )
        assert result.exit_code == 0, result.output
        assert "Loader calls: 1 for 10 requests" in result.output

    def test_invalid_env_settings_exit(self):
        result = runner.invoke(app, ["lock"], env={"CACHEGUARD_BACKEND": "memcached"})
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_lock_walkthrough(self):
        result = runner.invoke(app, ["lock", "--lease", "0.15", "--hold", "0.3"])
        assert result.exit_code == 0, result.output
        assert "caller A acquires order:42" in result.output
        assert "ok=false" in result.output

    def test_ratelimit(self):
        result = runner.invoke(app, ["ratelimit", "--limit", "3", "--burst", "5"])
        assert result.exit_code == 0, result.output
        assert "fixed window" in result.output
        assert "sliding window" in result.output

    def test_unknown_backend(self):
        result = runner.invoke(app, ["ratelimit", "--backend", "memcached"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
