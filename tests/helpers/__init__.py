"""Shared test helpers."""

from tests.helpers.executables import write_executable
from tests.helpers.launch import FAKE_AGENT, fake_agent_launch
from tests.helpers.sinks import RecordingSink

__all__ = ["FAKE_AGENT", "RecordingSink", "fake_agent_launch", "write_executable"]
