#!/usr/bin/env python3
"""
Tests for declarative flag parsing.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from vfshell.flags import FlagSpec, parse_flags
from vfshell.errors import FlagError


SPECS = [
    FlagSpec('all', short='a', long='all'),
    FlagSpec('long', short='l'),
    FlagSpec('count', short='n', long='count', takes_value=True, type=int, default=10),
    FlagSpec('name', long='name', takes_value=True),
]


class TestParseFlags:

    def test_defaults(self):
        flags, rest = parse_flags([], SPECS)
        assert flags == {'all': False, 'long': False, 'count': 10, 'name': None}
        assert rest == []

    def test_short_and_combined(self):
        flags, rest = parse_flags(['-a', 'x', '-l'], SPECS)
        assert flags['all'] and flags['long']
        assert rest == ['x']
        flags, _ = parse_flags(['-la'], SPECS)
        assert flags['all'] and flags['long']

    @pytest.mark.parametrize('args', [
        ['-n5'], ['-n', '5'], ['--count=5'], ['--count', '5'], ['-an5'],
    ])
    def test_value_forms(self, args):
        flags, rest = parse_flags(args, SPECS)
        assert flags['count'] == 5
        assert rest == []

    def test_long_boolean(self):
        flags, _ = parse_flags(['--all'], SPECS)
        assert flags['all'] is True

    def test_end_of_flags(self):
        flags, rest = parse_flags(['-a', '--', '-l', '--all'], SPECS)
        assert flags['all'] and not flags['long']
        assert rest == ['-l', '--all']

    def test_lone_dash_is_positional(self):
        _, rest = parse_flags(['-'], SPECS)
        assert rest == ['-']

    def test_unknown_flags_are_positional(self):
        flags, rest = parse_flags(['-5', '-x', '--verbose', '-ax'], SPECS)
        assert rest == ['-5', '-x', '--verbose', '-ax']
        assert not flags['all']

    def test_bad_value_type(self):
        with pytest.raises(FlagError):
            parse_flags(['-n', 'many'], SPECS)

    def test_missing_value(self):
        with pytest.raises(FlagError):
            parse_flags(['-n'], SPECS)
        with pytest.raises(FlagError):
            parse_flags(['--name'], SPECS)

    def test_value_for_boolean_long_flag(self):
        with pytest.raises(FlagError):
            parse_flags(['--all=yes'], SPECS)
