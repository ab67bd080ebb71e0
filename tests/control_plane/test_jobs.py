# tests/control_plane/test_jobs.py
"""
Unit Tests for the fleet-jobs command line
"""

import pytest

from jobs import build_parser, run_collect, run_deploy, run_purge


class TestParser:
    def test_collect(self):
        args = build_parser().parse_args(["collect"])

        assert args.func is run_collect

    def test_purge(self):
        args = build_parser().parse_args(["purge"])

        assert args.func is run_purge

    def test_deploy(self):
        args = build_parser().parse_args(["deploy", "7", "--operator", "alice"])

        assert args.func is run_deploy
        assert args.gateway_id == 7
        assert args.operator == "alice"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_gateway_id_must_be_int(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["deploy", "abc"])
