#!/usr/bin/env python3
"""
Tests for the pipeline executor: chaining, sequencing operators,
redirection, preprocessing and the built-in commands.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import pytest
from vfshell.vfs import FileSystem
from vfshell.executor import CommandExecutor
from vfshell.registry import CommandDefinition, CommandResult
from vfshell.errors import PermissionDeniedError
from vfshell import builtins


@pytest.fixture
def executor():
    """Executor for user Guest, starting in the home directory."""
    fs = FileSystem()
    fs.users.add_user('alice')
    executor = CommandExecutor(fs, user='Guest')
    executor.change_directory('/home/Guest')
    return executor


def run(executor, *lines):
    """Run lines in order on one event loop; return the last result."""
    async def scenario():
        result = None
        for line in lines:
            result = await executor.run(line)
        return result
    return asyncio.run(scenario())


def output(executor, *lines):
    return run(executor, *lines).output


class TestPipelines:

    def test_pipe_chaining(self, executor):
        assert output(executor, 'echo hi | tr h H') == 'Hi'

    def test_three_segments(self, executor):
        assert output(executor, 'echo hello world | tr -d o | wc -c') == '9'

    def test_unknown_command(self, executor):
        result = run(executor, 'frobnicate')
        assert not result.success
        assert result.error == "pipeline error for 'frobnicate': frobnicate: command not found"
        assert result.exit_code == 127

    def test_first_failure_stops_pipeline(self, executor):
        calls = []

        async def record(ctx):
            calls.append(ctx.stdin)
            return CommandResult.ok('recorded')

        executor.registry.register(CommandDefinition('record', record))
        result = run(executor, 'cat missing.txt | record')
        assert not result.success
        assert result.error.startswith("pipeline error for 'cat': cat: ")
        assert calls == []

    def test_handler_exception_becomes_failure(self, executor):
        async def boom(ctx):
            raise RuntimeError('kaboom')

        executor.registry.register(CommandDefinition('boom', boom))
        result = run(executor, 'boom')
        assert not result.success
        assert result.error == "pipeline error for 'boom': Command 'boom' failed: kaboom"

    def test_usage_errors(self, executor):
        result = run(executor, 'sleep')
        assert not result.success
        assert 'missing operand' in result.error


class TestSequencing:

    def test_and_short_circuits(self, executor):
        result = run(executor, 'false && echo x')
        assert not result.success
        assert result.output == ''

    def test_or_runs_on_failure(self, executor):
        assert output(executor, 'false || echo y') == 'y'

    def test_or_skipped_on_success(self, executor):
        assert output(executor, 'echo a || echo b') == 'a'

    def test_semicolon_always_proceeds(self, executor):
        assert output(executor, 'false ; echo z') == 'z'

    def test_skipped_pipeline_keeps_last_status(self, executor):
        assert output(executor, 'false && echo a || echo b') == 'b'
        assert output(executor, 'true || echo a && echo c') == 'c'

    def test_parse_error_runs_nothing(self, executor):
        result = run(executor, "echo x > made.txt && echo 'oops")
        assert not result.success
        assert 'Unterminated' in result.error
        assert executor.fs.find_node('/home/Guest/made.txt', 'Guest') is None


class TestRedirection:

    def test_overwrite_then_append(self, executor):
        result = run(executor, 'echo abc > f.txt')
        assert result.success and result.output == ''
        assert output(executor, 'cat f.txt') == 'abc'
        run(executor, 'echo def >> f.txt')
        assert output(executor, 'cat f.txt') == 'abc\ndef'
        run(executor, 'echo new > f.txt')
        assert output(executor, 'cat f.txt') == 'new'

    def test_append_to_missing_file(self, executor):
        run(executor, 'echo first >> log.txt')
        assert executor.fs.read_file('/home/Guest/log.txt', 'Guest') == 'first'

    def test_append_after_trailing_newline(self, executor):
        executor.fs.create_or_update_file('/home/Guest/f.txt', 'abc\n', 'Guest')
        run(executor, 'echo def >> f.txt')
        assert executor.fs.read_file('/home/Guest/f.txt', 'Guest') == 'abc\ndef'

    def test_input_redirect(self, executor):
        executor.fs.create_or_update_file('/home/Guest/in.txt', 'one\ntwo', 'Guest')
        assert output(executor, 'wc -l < in.txt') == '2'
        assert output(executor, 'tr o 0 < in.txt > out.txt ; cat out.txt') == '0ne\ntw0'

    def test_input_redirect_errors(self, executor):
        assert 'No such file' in run(executor, 'cat < missing.txt').error
        assert not run(executor, 'cat < /home').success

    def test_creates_parent_directories(self, executor):
        run(executor, 'echo x > a/b/c.txt')
        assert executor.fs.read_file('/home/Guest/a/b/c.txt', 'Guest') == 'x'

    def test_directory_target_refused(self, executor):
        result = run(executor, 'echo x > /home')
        assert not result.success
        assert 'is a directory' in result.error

    def test_permission_denied(self, executor):
        result = run(executor, 'echo x > /etc/motd')
        assert not result.success
        assert 'Permission denied' in result.error

    def test_redirect_is_saved(self, executor):
        run(executor, 'echo persisted > p.txt')
        assert 'persisted' in executor.fs.store.blobs['vfshell_fs']

    def test_quota_failure_reported(self, executor):
        executor.fs.max_size = executor.fs.total_size() + 5
        result = run(executor, 'echo way-too-much-text > big.txt')
        assert not result.success
        assert 'quota' in result.error


class TestPreprocessing:

    def test_variables(self, executor):
        assert output(executor, 'set NAME=world', 'echo hello $NAME') == 'hello world'
        assert output(executor, "echo '$NAME'") == '$NAME'
        assert output(executor, 'echo $USER $HOME') == 'Guest /home/Guest'

    def test_invalid_variable(self, executor):
        assert not run(executor, 'set 9x=1').success

    def test_alias(self, executor):
        assert output(executor, "alias greet='echo hi'", 'greet there') == 'hi there'
        assert output(executor, 'alias greet') == "alias greet='echo hi'"

    def test_alias_loop_never_hangs(self, executor):
        result = run(executor, 'alias a=b', 'alias b=a', 'a')
        assert not result.success
        assert 'Alias loop' in result.error

    def test_unalias(self, executor):
        run(executor, 'alias x=pwd', 'unalias x')
        assert not run(executor, 'x').success

    def test_glob(self, executor):
        run(executor, 'touch a.txt b.txt c.log')
        assert output(executor, 'ls *.txt') == 'a.txt\nb.txt'
        run(executor, 'rm *.txt')
        assert output(executor, 'ls') == 'c.log'


class TestFileCommands:

    def test_mkdir_cd_pwd(self, executor):
        run(executor, 'mkdir -p x/y', 'cd x/y')
        assert output(executor, 'pwd') == '/home/Guest/x/y'
        run(executor, 'cd ..')
        assert executor.cwd == '/home/Guest/x'
        run(executor, 'cd')
        assert executor.cwd == '/home/Guest'

    def test_cd_errors(self, executor):
        assert not run(executor, 'cd /nope').success
        assert not run(executor, 'cd /etc/vfshell.conf').success

    def test_ls_long(self, executor):
        run(executor, 'echo hello > f.txt')
        line = output(executor, 'ls -l')
        assert line.startswith('-rw-r--r-- Guest Guest')
        assert line.endswith(' f.txt')

    def test_ls_hidden(self, executor):
        run(executor, 'touch .secret visible')
        assert output(executor, 'ls') == 'visible'
        assert output(executor, 'ls -a') == '.secret\nvisible'

    def test_rm_directory_needs_recursive(self, executor):
        run(executor, 'mkdir d')
        assert 'Is a directory' in run(executor, 'rm d').error
        assert run(executor, 'rm -r d').success
        assert run(executor, 'rm -f nothing-here').success
        assert not run(executor, 'rm nothing-here').success

    def test_cp_and_mv(self, executor):
        run(executor, 'echo data > a.txt', 'mkdir d', 'cp a.txt d', 'mv a.txt b.txt')
        assert output(executor, 'cat d/a.txt b.txt') == 'data\ndata'
        assert not run(executor, 'cp d e').success
        assert run(executor, 'cp -r d e').success
        assert output(executor, 'cat e/a.txt') == 'data'

    def test_chmod(self, executor):
        run(executor, 'touch f', 'chmod 600 f')
        assert executor.fs.get_node('/home/Guest/f', 'Guest').mode == 0o600
        assert 'invalid mode' in run(executor, 'chmod rwx f').error

    def test_chown_requires_root(self, executor):
        run(executor, 'touch f')
        assert not run(executor, 'chown alice f').success
        assert run(executor, 'su', 'chown alice /home/Guest/f').success
        assert executor.fs.get_node('/home/Guest/f', 'root').owner == 'alice'


class TestUsers:

    def test_su_and_logout(self, executor):
        assert output(executor, 'whoami') == 'Guest'
        run(executor, 'su alice')
        assert output(executor, 'whoami') == 'alice'
        assert output(executor, 'echo $USER') == 'alice'
        run(executor, 'logout')
        assert output(executor, 'whoami') == 'Guest'
        assert executor.cwd == '/home/Guest'
        assert not run(executor, 'logout').success

    def test_su_unknown_user(self, executor):
        assert not run(executor, 'su nobody').success

    def test_groups(self, executor):
        executor.users.add_group('staff')
        executor.users.add_user_to_group('Guest', 'staff')
        assert output(executor, 'groups') == 'Guest staff'

    def test_exit_at_base_requests_exit(self, executor):
        run(executor, 'su', 'exit')
        assert not executor.exit_requested
        run(executor, 'exit')
        assert executor.exit_requested


class TestNeedsInput:

    def test_read_suspends_and_resumes(self, executor):
        async def scenario():
            first = await executor.run("read -p 'Name? ' NAME && echo got it")
            assert first.needs_input and first.prompt == 'Name? '
            refused = await executor.run('echo busy')
            assert not refused.success
            final = await executor.provide_input('Ada')
            echoed = await executor.run('echo $NAME')
            return final, echoed

        final, echoed = asyncio.run(scenario())
        assert final.success and final.output == 'got it'
        assert echoed.output == 'Ada'

    def test_two_prompts(self, executor):
        async def scenario():
            first = await executor.run('read A ; read B')
            second = await executor.provide_input('1')
            third = await executor.provide_input('2')
            return first, second, third

        first, second, third = asyncio.run(scenario())
        assert first.needs_input and second.needs_input
        assert third.success and not third.needs_input
        assert executor.environment.get('A') == '1'
        assert executor.environment.get('B') == '2'

    def test_cancel_input(self, executor):
        async def scenario():
            await executor.run('read X')
            cancelled = await executor.cancel_input()
            after = await executor.run('echo ok')
            return cancelled, after

        cancelled, after = asyncio.run(scenario())
        assert not cancelled.success
        assert after.output == 'ok'
        assert executor.environment.get('X') is None

    def test_provide_without_pending(self, executor):
        assert not asyncio.run(executor.provide_input('x')).success


class TestPermissionErrors:

    def test_cd_without_execute(self, executor):
        run(executor, 'mkdir locked', 'chmod 600 locked')
        with pytest.raises(PermissionDeniedError):
            executor.change_directory('locked')
        assert run(executor, 'cd locked').error.endswith("cd: 'locked': Permission denied")

    def test_input_redirect_without_read(self, executor):
        run(executor, 'echo hidden > secret.txt', 'chmod 200 secret.txt')
        result = run(executor, 'cat < secret.txt')
        assert not result.success
        assert result.error == "cannot open 'secret.txt': Permission denied"


def write_script(executor, path, text, mode=0o755):
    executor.fs.create_or_update_file(path, text, 'Guest')
    executor.fs.chmod(path, mode, 'Guest')


class TestScripts:

    def test_runs_lines_in_order(self, executor):
        write_script(executor, '/home/Guest/hello.sh',
                     "# greeting\necho hello\n\necho 'a # b' # trailing\n")
        assert output(executor, 'run hello.sh') == 'hello\na # b'

    def test_arguments(self, executor):
        write_script(executor, '/home/Guest/args.sh', 'echo $# $1 $2\necho $@\necho $0 [$3]')
        assert output(executor, 'run args.sh one two') == '2 one two\none two\nargs.sh []'

    def test_variables_are_scoped_to_the_script(self, executor):
        write_script(executor, '/home/Guest/vars.sh', 'set X=inner\necho $X')
        assert output(executor, 'run vars.sh') == 'inner'
        assert output(executor, 'echo [$X]') == '[]'

    def test_stops_at_first_failing_line(self, executor):
        write_script(executor, '/home/Guest/bad.sh', 'echo one\ncat missing.txt\necho never')
        result = run(executor, 'run bad.sh')
        assert not result.success
        assert "Script 'bad.sh' error on line 2: cat missing.txt" in result.error
        assert 'Error: pipeline error for \'cat\'' in result.error
        assert result.error.endswith("Script 'bad.sh' failed.")

    def test_needs_read_and_execute(self, executor):
        write_script(executor, '/home/Guest/plain.sh', 'echo hi', mode=0o644)
        result = run(executor, 'run plain.sh')
        assert not result.success
        assert "cannot execute 'plain.sh': Permission denied" in result.error
        write_script(executor, '/home/Guest/hidden.sh', 'echo hi', mode=0o300)
        assert "cannot read 'hidden.sh'" in run(executor, 'run hidden.sh').error

    def test_extension_and_empty_script(self, executor):
        write_script(executor, '/home/Guest/script.txt', 'echo hi')
        assert 'not a shell script' in run(executor, 'run script.txt').error
        write_script(executor, '/home/Guest/empty.sh', '')
        assert output(executor, 'run empty.sh') == "run: Script 'empty.sh' is empty."

    def test_nested_scripts(self, executor):
        write_script(executor, '/home/Guest/inner.sh', 'echo inner $1')
        write_script(executor, '/home/Guest/outer.sh', 'echo outer\nrun inner.sh $1')
        assert output(executor, 'run outer.sh x') == 'outer\ninner x'

    def test_recursion_is_capped(self, executor, monkeypatch):
        monkeypatch.setattr(builtins, 'MAX_SCRIPT_DEPTH', 3)
        write_script(executor, '/home/Guest/loop.sh', 'run loop.sh')
        result = run(executor, 'run loop.sh')
        assert not result.success
        assert 'exceeded maximum recursion depth (3)' in result.error

    def test_steps_are_capped(self, executor, monkeypatch):
        monkeypatch.setattr(builtins, 'MAX_SCRIPT_STEPS', 2)
        write_script(executor, '/home/Guest/long.sh', 'echo 1\necho 2\necho 3')
        result = run(executor, 'run long.sh')
        assert 'exceeded maximum execution steps (2)' in result.error
        assert 'line 3' not in result.error

    def test_script_can_prompt(self, executor):
        write_script(executor, '/home/Guest/ask.sh', "read -p 'Name? ' N\necho hi $N")

        async def scenario():
            first = await executor.run('run ask.sh')
            second = await executor.provide_input('Ada')
            return first, second

        first, second = asyncio.run(scenario())
        assert first.needs_input and first.prompt == 'Name? '
        assert second.output == 'hi Ada'


class TestAccountCommands:

    def test_useradd(self, executor):
        result = run(executor, 'useradd carol')
        assert result.output == "User 'carol' registered. Home directory created at /home/carol."
        assert executor.fs.get_node('/home/carol', 'carol').owner == 'carol'
        assert run(executor, 'useradd carol').error.endswith("useradd: User 'carol' already exists.")
        assert run(executor, 'su carol', 'whoami').output == 'carol'
        assert executor.cwd == '/home/carol'

    def test_groupadd_is_root_only(self, executor):
        result = run(executor, 'groupadd dev')
        assert result.error.endswith('groupadd: only root can add groups.')
        assert run(executor, 'su', 'groupadd dev').output == "Group 'dev' created."
        assert run(executor, 'groupadd dev').error.endswith("groupadd: group 'dev' already exists.")

    def test_usermod_append_group(self, executor):
        run(executor, 'su', 'groupadd dev')
        assert output(executor, 'usermod -aG dev alice') == "Added user 'alice' to group 'dev'."
        assert output(executor, 'usermod -aG dev alice') == "User 'alice' is already in group 'dev'."
        assert output(executor, 'groups alice') == 'alice dev'
        assert "group 'ops' does not exist" in run(executor, 'usermod -aG ops alice').error
        assert "user 'zed' does not exist" in run(executor, 'usermod -aG dev zed').error
        assert not run(executor, 'usermod -G dev alice').success

    def test_usermod_is_root_only(self, executor):
        executor.users.add_group('dev')
        assert 'only root' in run(executor, 'usermod -aG dev alice').error

    def test_accounts_are_persisted(self, executor):
        run(executor, 'useradd carol', 'su', 'groupadd dev', 'usermod -aG dev carol')
        fresh = FileSystem(store=executor.fs.store)
        asyncio.run(fresh.load())
        assert fresh.users.groups_for('carol') == ['carol', 'dev']
        assert fresh.get_node('/home/carol', 'root').owner == 'carol'


class TestDiskUsage:

    def test_df(self, executor):
        executor.fs.max_size = 1000
        executor.fs.create_or_update_file('/home/Guest/f.txt', 'x' * 100, 'Guest')
        used = executor.fs.total_size()
        header, separator, row = output(executor, 'df').split('\n')
        assert header == "Filesystem      Size      Used     Avail   Use%  Mounted on"
        assert separator == "----------  --------  --------  --------  ----  ----------"
        assert row.split() == ['vfshell', '1000', str(used), str(1000 - used),
                               f"{int(used * 100 / 1000 + 0.5)}%", '/']

    def test_df_human_readable(self, executor):
        executor.fs.max_size = 2 * 1024 * 1024
        row = output(executor, 'df -h').split('\n')[2]
        assert row.startswith('vfshell       ')
        assert '2 MB' in row

    def test_du(self, executor):
        run(executor, 'mkdir -p d/sub', 'echo 12345 > d/a.txt', 'echo abc > d/sub/b.txt')
        assert output(executor, 'du d') == '5\td/a.txt\n3\td/sub/b.txt\n3\td/sub\n8\td'
        assert output(executor, 'du -s d') == '8\td'
        assert output(executor, 'du -s -h d') == '8 B\td'

    def test_du_requires_read(self, executor):
        run(executor, 'mkdir d', 'chmod 300 d')
        result = run(executor, 'du d')
        assert result.error.endswith("du: cannot read directory 'd': Permission denied")

    def test_format_bytes(self):
        assert builtins.format_bytes(0) == '0 B'
        assert builtins.format_bytes(512) == '512 B'
        assert builtins.format_bytes(1536) == '1.5 KB'
        assert builtins.format_bytes(640 * 1024 * 1024) == '640 MB'


class TestHistoryCommand:

    def test_lists_and_clears(self, executor):
        for line in ('ls', 'cd /etc'):
            executor.history.add(line)
        assert output(executor, 'history') == '    1  ls\n    2  cd /etc'
        assert output(executor, 'history -c') == 'Command history cleared.'
        assert executor.history.history == []
