"""Unit tests configuration file."""

import os

import pytest

from cmdproto.compiler.model import load_model

FILE_DIR = os.path.dirname(os.path.realpath(__file__))
PROTOCOL_FILE = os.path.join(FILE_DIR, "compiler", "protocol.json")


def pytest_configure(config):
    """Disable verbose output when running tests."""
    terminal = config.pluginmanager.getplugin("terminal")
    if terminal:
        terminal.TerminalReporter.showfspath = False


@pytest.fixture
def model():
    """The sample protocol, resolved for an 8-byte host."""
    return load_model(PROTOCOL_FILE)
