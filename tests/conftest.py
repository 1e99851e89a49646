"""Pytest configuration and shared fixtures for the labconsole test suite."""

import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest

# Add the project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from labconsole.engine.controller import ExecutionController, Submission
from labconsole.session.config import ConsoleConfig
from labconsole.session.console import ConsoleSession
from tests.fixtures.events import RecordingSink


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def config() -> ConsoleConfig:
    """Fast timings so scheduling tests stay short."""
    return ConsoleConfig(
        frame_interval=0.005,
        idle_callback_delay=0.005,
        subprocess_grace_period=0.5,
    )


@pytest.fixture
async def controller(config, sink) -> AsyncGenerator[ExecutionController, None]:
    """Create a controller that's properly cleaned up."""
    controller = ExecutionController(config, sink=sink)
    yield controller
    await controller.close()


@pytest.fixture
async def session(config, sink) -> AsyncGenerator[ConsoleSession, None]:
    session = ConsoleSession(config, sink=sink)
    yield session
    await session.close()


@pytest.fixture
def evaluate(controller):
    """Evaluate source against the shared controller."""

    async def run(source: str, show_output: bool = True, script: str = "command_window"):
        return await controller.evaluate(Submission(source, show_output, script))

    return run


@pytest.fixture
def snippets() -> dict[str, str]:
    """Collection of source snippets."""
    return {
        "simple": "1 + 1",
        "assignment": "y = 2",
        "error": "x = 1\ny = undefined_name",
        "unpack": "a, b = 1, 2",
        "forbidden": "config = 1",
        "async": "import asyncio\nawait asyncio.sleep(0)\n42",
        "stoppable": (
            "import asyncio\n"
            "while True:\n"
            "    check_stop()\n"
            "    await asyncio.sleep(0.01)\n"
        ),
    }


# Test markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Component integration tests")
    config.addinivalue_line("markers", "slow: Tests that take >1s")


# Timeout configuration
def pytest_collection_modifyitems(config, items):
    """Modify test collection to add timeout based on markers."""
    for item in items:
        if item.get_closest_marker("slow"):
            item.add_marker(pytest.mark.timeout(30))
        elif item.get_closest_marker("unit"):
            item.add_marker(pytest.mark.timeout(5))
        else:
            item.add_marker(pytest.mark.timeout(10))
