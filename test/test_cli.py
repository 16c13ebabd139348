#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import contextlib
import io
import os
import sys
import unittest

from unittest import mock

from click.testing import CliRunner

import apkchannel

from test_apkchannel import TempDirTestCase


def run_cli(*args, env=None):
    return CliRunner().invoke(apkchannel.make_cli(), list(args),
                              prog_name=apkchannel.NAME, env=env)


class TestCLI(TempDirTestCase):

    def test_write_read(self):
        apk, out = self.signed_apk(), self.path("out.apk")
        result = run_cli("write", apk, out, "pgyer")
        self.assertEqual(result.exit_code, 0)
        result = run_cli("read", out)
        self.assertEqual((result.exit_code, result.output), (0, "pgyer\n"))
        result = run_cli("read", "--scheme", "block", out)
        self.assertEqual((result.exit_code, result.output), (0, "pgyer\n"))

    def test_write_scheme(self):
        apk, out = self.unsigned_apk(), self.path("out.apk")
        for scheme in ("comment", "file"):
            result = run_cli("write", "--scheme", scheme, apk, out, scheme)
            self.assertEqual(result.exit_code, 0)
            self.assertEqual(apkchannel.do_read(out, scheme), scheme)

    def test_scheme_envvar(self):
        apk, out = self.unsigned_apk(), self.path("out.apk")
        env = {"APKCHANNEL_SCHEME": "comment"}
        result = run_cli("write", apk, out, "abc", env=env)
        self.assertEqual(result.exit_code, 0)
        result = run_cli("read", out, env=env)
        self.assertEqual((result.exit_code, result.output), (0, "abc\n"))
        self.assertEqual(apkchannel.read_channel_comment(out), "abc")

    def test_read_absent(self):
        result = run_cli("read", self.unsigned_apk())
        self.assertEqual(result.exit_code, 1)
        self.assertIn("No channel found.", result.output)

    def test_write_error(self):
        apk, out = self.unsigned_apk(), self.path("out.apk")
        result = run_cli("write", apk, out, "pgyer")
        self.assertEqual(result.exit_code, 1)
        self.assertIsInstance(result.exception, apkchannel.NoAPKSigningBlock)
        self.assertFalse(os.path.exists(out))

    def test_main_error_message(self):
        apk, out = self.unsigned_apk(), self.path("out.apk")
        err = io.StringIO()
        with mock.patch.object(sys, "argv", [apkchannel.NAME, "write", apk, out, "pgyer"]), \
                contextlib.redirect_stderr(err):
            with self.assertRaises(SystemExit) as cm:
                apkchannel.main()
        self.assertEqual(cm.exception.code, 1)
        self.assertEqual(err.getvalue(), "Error: No APK Signing Block.\n")

    def test_inspect(self):
        apk, out = self.signed_apk(), self.path("out.apk")
        apkchannel.write_channel_block(apk, out, "pgyer")
        result = run_cli("inspect", out)
        self.assertEqual(result.exit_code, 0)
        self.assertIn("pair 0x00000001:", result.output)
        self.assertIn("pair 0x06054b51:", result.output)
        self.assertIn("length=9 (channel)", result.output)
        result = run_cli("inspect", self.unsigned_apk())
        self.assertEqual(result.exit_code, 0)
        self.assertIn("APK Signing Block:     none", result.output)

    def test_version(self):
        result = run_cli("--version")
        self.assertEqual(result.exit_code, 0)
        self.assertIn(apkchannel.__version__, result.output)


if __name__ == "__main__":
    unittest.main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
