import logging
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import task_topics as tt  # noqa: E402


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def messages(self, level=None):
        return [
            r.getMessage()
            for r in self.records
            if level is None or r.levelname == level
        ]


@pytest.fixture
def captured_logger():
    logger = logging.getLogger(tt.LOGGER_NAME + ".test")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    handler = ListHandler()
    logger.addHandler(handler)
    try:
        yield logger, handler
    finally:
        logger.removeHandler(handler)


@pytest.fixture
def repo(captured_logger):
    logger, _ = captured_logger
    r = tt.TaskRepository(':memory:', logger=logger)
    try:
        yield r
    finally:
        r.close()


@pytest.fixture
def app(captured_logger):
    logger, _ = captured_logger
    state = tt.open_app(':memory:', logger)
    try:
        yield state
    finally:
        state.repo.close()


@pytest.fixture
def select_topic():
    def _select(state, name):
        for i, topic in enumerate(state.topics):
            if topic.name == name:
                state.selected_topic = i
                state.selected = 0
                state.load_tasks()
                return topic
        raise AssertionError(f"topic {name!r} not loaded")
    return _select


@pytest.fixture
def work_app(app, select_topic):
    """App with a custom 'Work' topic selected."""
    assert app.add_topic('Work')
    select_topic(app, 'Work')
    return app
