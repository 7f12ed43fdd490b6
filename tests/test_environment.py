#!/usr/bin/env python3
"""
Tests for environment scopes, variable expansion, aliases and globbing.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from vfshell.environment import Environment, AliasTable, Preprocessor
from vfshell.vfs import FileSystem
from vfshell.errors import AliasLoopError, InvalidVariableError, ScopeError


@pytest.fixture
def env():
    return Environment('alice', 'box')


class TestEnvironment:

    def test_base_scope(self, env):
        assert env.get('USER') == 'alice'
        assert env.get('HOME') == '/home/alice'
        assert env.get('HOST') == 'box'
        assert env.get('PATH') == '/bin:/usr/bin'
        assert env.depth == 1

    @pytest.mark.parametrize('name', ['1abc', 'a-b', '', 'a b', '$x'])
    def test_invalid_names(self, env, name):
        with pytest.raises(InvalidVariableError):
            env.set(name, 'v')

    def test_valid_names(self, env):
        env.set('_private', '1')
        env.set('Name2', '2')
        assert env.all()['Name2'] == '2'

    def test_unset(self, env):
        env.set('X', '1')
        env.unset('X')
        env.unset('X')
        assert env.get('X') is None

    def test_push_shadows_and_pop_restores(self, env):
        env.set('X', 'outer')
        env.push()
        env.set('X', 'inner')
        env.set('ONLY_INNER', '1')
        assert env.get('X') == 'inner'
        env.pop()
        assert env.get('X') == 'outer'
        assert env.get('ONLY_INNER') is None

    def test_base_is_never_popped(self, env):
        with pytest.raises(ScopeError):
            env.pop()
        assert env.depth == 1


class TestExpansion:

    def test_simple_and_braced(self, env):
        env.set('NAME', 'world')
        assert env.expand('hello $NAME') == 'hello world'
        assert env.expand('${NAME}s') == 'worlds'

    def test_unset_is_empty(self, env):
        assert env.expand('[$MISSING]') == '[]'

    def test_single_quotes_untouched(self, env):
        assert env.expand("echo '$USER' \"$USER\"") == "echo '$USER' \"alice\""

    def test_escaped_dollar_left_for_lexer(self, env):
        assert env.expand('echo \\$USER') == 'echo \\$USER'

    def test_lone_dollar(self, env):
        assert env.expand('cost $ 5') == 'cost $ 5'


class TestAliases:

    def test_leading_word_only(self):
        aliases = AliasTable()
        aliases.set('ll', 'ls -l')
        assert aliases.resolve('ll /home') == 'ls -l /home'
        assert aliases.resolve('echo ll') == 'echo ll'

    def test_chained(self):
        aliases = AliasTable()
        aliases.set('a', 'b --x')
        aliases.set('b', 'echo')
        assert aliases.resolve('a 1') == 'echo --x 1'

    def test_self_reference_expands_once(self):
        aliases = AliasTable()
        aliases.set('ls', 'ls -a')
        assert aliases.resolve('ls /') == 'ls -a /'

    def test_loop_terminates_with_error(self):
        aliases = AliasTable(max_iterations=10)
        aliases.set('a', 'b')
        aliases.set('b', 'a')
        with pytest.raises(AliasLoopError):
            aliases.resolve('a')

    def test_invalid_alias_name(self):
        with pytest.raises(InvalidVariableError):
            AliasTable().set('bad name', 'x')


class TestPreprocessor:

    @pytest.fixture
    def preprocessor(self):
        fs = FileSystem()
        for name in ('a.txt', 'b.txt', 'c.log', '.hidden.txt'):
            fs.create_or_update_file(f'/home/Guest/{name}', '', 'Guest')
        fs.current_path = '/home/Guest'
        env = Environment('Guest')
        return Preprocessor(env, AliasTable(), fs, lambda: 'Guest')

    def test_glob_expansion(self, preprocessor):
        assert preprocessor.process('ls *.txt') == 'ls a.txt b.txt'
        assert preprocessor.process('rm ?.log') == 'rm c.log'

    def test_glob_with_directory_prefix(self, preprocessor):
        assert preprocessor.process('cat /home/Guest/[ab].txt') == \
            'cat /home/Guest/a.txt /home/Guest/b.txt'

    def test_no_match_left_alone(self, preprocessor):
        assert preprocessor.process('ls *.md') == 'ls *.md'

    def test_quoted_glob_left_alone(self, preprocessor):
        assert preprocessor.process("ls '*.txt'") == "ls '*.txt'"

    def test_only_whitelisted_commands(self, preprocessor):
        assert preprocessor.process('echo *.txt') == 'echo *.txt'

    def test_order_is_variables_aliases_globs(self, preprocessor):
        preprocessor.environment.set('EXT', 'txt')
        preprocessor.aliases.set('show', 'cat')
        assert preprocessor.process('show *.$EXT') == 'cat a.txt b.txt'
