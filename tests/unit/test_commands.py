"""
Unit tests for the async command runner.
"""

import pytest

from ops_monitor.lib.commands import CommandError, run_command


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_captures_stdout(self):
        result = await run_command(['echo', 'backup ok'])

        assert result.returncode == 0
        assert result.stdout.strip() == 'backup ok'

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises_with_check(self):
        with pytest.raises(CommandError, match='rc=1'):
            await run_command(['false'])

    @pytest.mark.asyncio
    async def test_non_zero_exit_returned_without_check(self):
        result = await run_command(['false'], check=False)

        assert result.returncode == 1

    @pytest.mark.asyncio
    async def test_missing_program(self):
        with pytest.raises(CommandError, match='Cannot run'):
            await run_command(['lfa-no-such-tool'])

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        with pytest.raises(CommandError, match='timed out'):
            await run_command(['sleep', '5'], timeout=0.1)

    @pytest.mark.asyncio
    async def test_stdin_and_stdout_files(self, tmp_path):
        source = tmp_path / 'dump.sql'
        source.write_text('CREATE TABLE players;\n')
        target = tmp_path / 'copy.sql'

        result = await run_command(['cat'], stdin_path=str(source), stdout_path=str(target))

        assert result.stdout == ''
        assert target.read_text() == 'CREATE TABLE players;\n'

    @pytest.mark.asyncio
    async def test_extra_environment_is_merged(self):
        result = await run_command(['sh', '-c', 'echo $PGPASSWORD'], env={'PGPASSWORD': 'secret'})

        assert result.stdout.strip() == 'secret'
