#!/usr/bin/env python3
# task_topics: Terminal task tracker with topics, favourites and modal editing
#
# Hotkeys (normal mode)
#   a  add a task (name, then description)
#   A  quick add (description only, name is derived)
#   e  edit the selected task's description
#   t  toggle completed for the selected task
#   f  toggle favourite for the selected task
#   d  delete the selected task
#   Enter  expand/collapse task details
#   j/k, Down/Up  move selection
#   h/l, Left/Right  switch topic
#   N  add a topic
#   X  delete the current topic (Favourites and Default are protected)
#   PageUp/PageDown  scroll the log panel
#   H or ?  help
#   q  quit
#
# Topics
# - Favourites, Default and Completed are created on first start.
# - Favourites shows every favourite task, Default shows every task, any other
#   topic shows only the tasks it owns.
#
# Environment
# - TASK_MANAGER_DB_DIR / TASK_MANAGER_DB_FILENAME (store location)
# - TASK_MANAGER_LOG_LEVEL (file log level)

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import os
import sqlite3
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Dict, Iterator, List, Mapping, Optional, Set, Tuple

import yaml
from prompt_toolkit import Application
from prompt_toolkit.data_structures import Point
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.containers import ConditionalContainer, Float, FloatContainer
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame


# -----------------------------
# Config
# -----------------------------
DEFAULT_DB_FILENAME = "task_manager.db"
DEFAULT_LOG_FILENAME = "task_topics.log"
DEFAULT_LOG_LEVEL = "INFO"
ENV_DB_DIR = "TASK_MANAGER_DB_DIR"
ENV_DB_FILENAME = "TASK_MANAGER_DB_FILENAME"
ENV_LOG_LEVEL = "TASK_MANAGER_LOG_LEVEL"


@dataclass
class Config:
    db_dir: str
    db_filename: str = DEFAULT_DB_FILENAME
    log_file: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL
    db_path_override: Optional[str] = None

    @property
    def db_path(self) -> str:
        if self.db_path_override:
            return self.db_path_override
        return os.path.join(self.db_dir, self.db_filename)

    @property
    def log_path(self) -> str:
        if self.log_file:
            return self.log_file
        return os.path.join(os.path.dirname(self.db_path) or ".", DEFAULT_LOG_FILENAME)


def default_db_dir() -> str:
    return os.path.expanduser("~/.task_topics")


def load_config(path: str) -> Dict[str, str]:
    """Read the optional YAML config; only known keys are returned."""
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config: expected a mapping at the top level of {path}")
    out: Dict[str, str] = {}
    for key in ("db_dir", "db_filename", "log_file", "log_level"):
        value = raw.get(key)
        if value is None or str(value).strip() == "":
            continue
        out[key] = str(value).strip()
    return out


def resolve_config(
    config_path: Optional[str] = None,
    db_path: Optional[str] = None,
    log_level: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Config:
    """Merge CLI values, environment and YAML file (in that order of precedence)."""
    env = os.environ if environ is None else environ
    file_values = load_config(config_path) if config_path else {}

    def pick(env_name: Optional[str], key: str, default: Optional[str]) -> Optional[str]:
        if env_name:
            value = (env.get(env_name) or "").strip()
            if value:
                return value
        return file_values.get(key, default)

    db_dir = pick(ENV_DB_DIR, "db_dir", None) or default_db_dir()
    cfg = Config(
        db_dir=os.path.expanduser(db_dir),
        db_filename=pick(ENV_DB_FILENAME, "db_filename", DEFAULT_DB_FILENAME) or DEFAULT_DB_FILENAME,
        log_file=pick(None, "log_file", None),
        log_level=(log_level or pick(ENV_LOG_LEVEL, "log_level", DEFAULT_LOG_LEVEL) or DEFAULT_LOG_LEVEL).upper(),
    )
    if cfg.log_file:
        cfg.log_file = os.path.expanduser(cfg.log_file)
    if db_path:
        cfg.db_path_override = os.path.expanduser(db_path)
    return cfg


# -----------------------------
# Logging
# -----------------------------
LOGGER_NAME = "task_topics"


def setup_logging(log_path: str, log_level: str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    """Configure the file logger and return it.

    The terminal belongs to the full-screen UI, so records only go to a
    rotating file next to the store.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    directory = os.path.dirname(os.path.abspath(log_path))
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding="utf-8")
    lvl = getattr(logging, str(log_level).upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.INFO
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Models
# -----------------------------
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
QUICK_NAME_PREFIX = "Task "
QUICK_NAME_MAX = 20


def now_stamp() -> str:
    # Local time; stored as text so ordering stays lexicographic.
    return dt.datetime.now().strftime(TIMESTAMP_FORMAT)


def quick_task_name(description: str) -> str:
    return QUICK_NAME_PREFIX + description[:QUICK_NAME_MAX]


class TopicKind(Enum):
    FAVOURITES = "Favourites"
    DEFAULT = "Default"
    COMPLETED = "Completed"
    CUSTOM = "custom"

    @classmethod
    def from_name(cls, name: str) -> "TopicKind":
        for kind in SPECIAL_TOPICS:
            if name == kind.value:
                return kind
        return cls.CUSTOM

    @property
    def protected(self) -> bool:
        return self is not TopicKind.CUSTOM


# Bootstrap order on first start.
SPECIAL_TOPICS: Tuple[TopicKind, ...] = (TopicKind.FAVOURITES, TopicKind.DEFAULT, TopicKind.COMPLETED)
SPECIAL_TOPIC_DESCRIPTIONS: Dict[TopicKind, str] = {
    TopicKind.FAVOURITES: "Favourite tasks",
    TopicKind.DEFAULT: "All tasks",
    TopicKind.COMPLETED: "Completed tasks",
}


@dataclass
class Topic:
    id: int
    name: str
    description: str
    created_at: str
    updated_at: str
    kind: TopicKind = TopicKind.CUSTOM


@dataclass
class Task:
    id: int
    topic_id: int
    name: str
    description: str
    completed: bool
    favourite: bool
    created_at: str
    updated_at: str


@dataclass
class TaskUpdate:
    """Partial task change; ``None`` leaves a column untouched."""
    name: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None
    favourite: Optional[bool] = None


def topic_from_row(row: Mapping[str, object]) -> Topic:
    name = str(row["name"])
    return Topic(
        id=int(row["id"]),
        name=name,
        description=str(row["description"] or ""),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        kind=TopicKind.from_name(name),
    )


def task_from_row(row: Mapping[str, object]) -> Task:
    return Task(
        id=int(row["id"]),
        topic_id=int(row["topic_id"]),
        name=str(row["name"]),
        description=str(row["description"] or ""),
        completed=bool(row["completed"]),
        favourite=bool(row["favourite"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def topic_to_row(topic: Topic) -> Dict[str, object]:
    return {
        "id": topic.id,
        "name": topic.name,
        "description": topic.description,
        "created_at": topic.created_at,
        "updated_at": topic.updated_at,
    }


def task_to_row(task: Task) -> Dict[str, object]:
    return {
        "id": task.id,
        "topic_id": task.topic_id,
        "name": task.name,
        "description": task.description,
        "completed": 1 if task.completed else 0,
        "favourite": 1 if task.favourite else 0,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


def _encode_task_update(update: TaskUpdate, updated_at: str) -> Dict[str, object]:
    cols: Dict[str, object] = {}
    if update.name is not None:
        cols["name"] = update.name
    if update.description is not None:
        cols["description"] = update.description
    if update.completed is not None:
        cols["completed"] = 1 if update.completed else 0
    if update.favourite is not None:
        cols["favourite"] = 1 if update.favourite else 0
    cols["updated_at"] = updated_at
    return cols


# -----------------------------
# Errors
# -----------------------------
class StoreError(Exception):
    pass


class StoreUnavailable(StoreError):
    """The store cannot be opened; the session cannot continue."""


class QueryError(StoreError):
    """A single statement failed; the caller may carry on."""


class TopicNotFound(QueryError):
    pass


class TaskNotFound(QueryError):
    pass


class DuplicateTopic(QueryError):
    pass


# -----------------------------
# DB
# -----------------------------
class ConnectionPool:
    """Hands out sqlite connections, one checkout per repository call."""

    def __init__(self, path: str, size: int = 4):
        self.path = path
        self.in_memory = path == ":memory:"
        # Every :memory: connection is a separate database.
        self.size = 1 if self.in_memory else max(1, size)
        self._idle: List[sqlite3.Connection] = []
        self._opened = 0

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            if not self.in_memory:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open {self.path}: {exc}") from exc
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        if self._idle:
            conn = self._idle.pop()
        elif self._opened < self.size:
            conn = self._connect()
            self._opened += 1
        else:
            raise StoreUnavailable(f"no free connection for {self.path}")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._idle.append(conn)

    def close(self) -> None:
        while self._idle:
            self._idle.pop().close()
        self._opened = 0


class TaskRepository:
    CREATE_TOPIC_SQL = """
      CREATE TABLE IF NOT EXISTS topic (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
      )
    """
    CREATE_TASK_SQL = """
      CREATE TABLE IF NOT EXISTS task (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        topic_id INTEGER NOT NULL REFERENCES topic(id),
        name TEXT NOT NULL,
        description TEXT NOT NULL,
        completed BOOLEAN NOT NULL DEFAULT 0,
        favourite BOOLEAN NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
      )
    """
    TASK_COLUMNS = "id, topic_id, name, description, completed, favourite, created_at, updated_at"
    TOPIC_COLUMNS = "id, name, description, created_at, updated_at"

    def __init__(self, path: str, pool_size: int = 4, logger: Optional[logging.Logger] = None):
        self.path = path
        self.pool = ConnectionPool(path, size=pool_size)
        self.log = logger or logging.getLogger(LOGGER_NAME)
        self.ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _session(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except sqlite3.Error as exc:
            self.log.debug("%s failed: %s", action, exc)
            raise QueryError(f"{action}: {exc}") from exc

    def _cols(self, conn: sqlite3.Connection, table: str) -> List[str]:
        return [r["name"] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()]

    def ensure_schema(self) -> None:
        with self._session("ensure schema") as conn:
            conn.execute(self.CREATE_TOPIC_SQL)
            conn.execute(self.CREATE_TASK_SQL)
            cols = self._cols(conn, "task")
            # Older stores keyed tasks by description only.
            if "name" not in cols:
                conn.execute("ALTER TABLE task ADD COLUMN name TEXT NOT NULL DEFAULT ''")
                conn.execute(
                    "UPDATE task SET name = ? || substr(description, 1, ?) WHERE name = ''",
                    (QUICK_NAME_PREFIX, QUICK_NAME_MAX),
                )
                self.log.info("Migrated task table: added column name")
            if "favourite" not in cols:
                conn.execute("ALTER TABLE task ADD COLUMN favourite BOOLEAN NOT NULL DEFAULT 0")
                self.log.info("Migrated task table: added column favourite")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_task_topic ON task(topic_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_task_favourite ON task(favourite)")

    # --- topics ---
    def load_topics(self) -> List[Topic]:
        with self._session("load topics") as conn:
            rows = conn.execute(f"SELECT {self.TOPIC_COLUMNS} FROM topic ORDER BY id").fetchall()
        return [topic_from_row(r) for r in rows]

    def get_topic(self, topic_id: int) -> Topic:
        with self._session("load topic") as conn:
            row = conn.execute(f"SELECT {self.TOPIC_COLUMNS} FROM topic WHERE id=?", (topic_id,)).fetchone()
        if row is None:
            raise TopicNotFound(f"topic {topic_id} does not exist")
        return topic_from_row(row)

    def add_topic(self, name: str, description: str = "") -> Topic:
        now = now_stamp()
        with self._session("add topic") as conn:
            if conn.execute("SELECT 1 FROM topic WHERE name=? LIMIT 1", (name,)).fetchone():
                raise DuplicateTopic(f"topic {name!r} already exists")
            cur = conn.execute(
                "INSERT INTO topic(name, description, created_at, updated_at) VALUES (?,?,?,?)",
                (name, description, now, now),
            )
            row = conn.execute(
                f"SELECT {self.TOPIC_COLUMNS} FROM topic WHERE id=?", (cur.lastrowid,)
            ).fetchone()
        self.log.debug("Inserted topic id=%s name=%s", row["id"], name)
        return topic_from_row(row)

    def delete_topic(self, topic_id: int) -> int:
        with self._session("delete topic") as conn:
            row = conn.execute(f"SELECT {self.TOPIC_COLUMNS} FROM topic WHERE id=?", (topic_id,)).fetchone()
            if row is None:
                raise TopicNotFound(f"topic {topic_id} does not exist")
            topic = topic_from_row(row)
            if topic.kind.protected:
                self.log.debug("Refusing to delete protected topic %s", topic.name)
                return 0
            cur = conn.execute("DELETE FROM topic WHERE id=?", (topic_id,))
            return cur.rowcount

    # --- tasks ---
    def load_tasks(self, topic: Topic) -> List[Task]:
        sql = f"SELECT {self.TASK_COLUMNS} FROM task"
        params: Tuple[object, ...] = ()
        if topic.kind is TopicKind.FAVOURITES:
            sql += " WHERE favourite = 1"
        elif topic.kind is TopicKind.DEFAULT:
            pass
        else:
            sql += " WHERE topic_id = ?"
            params = (topic.id,)
        sql += " ORDER BY id"
        with self._session("load tasks") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [task_from_row(r) for r in rows]

    def count_tasks(self) -> int:
        with self._session("count tasks") as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM task").fetchone()
        return int(n)

    def get_task(self, task_id: int) -> Task:
        with self._session("load task") as conn:
            row = self._fetch_task(conn, task_id)
        return task_from_row(row)

    def _fetch_task(self, conn: sqlite3.Connection, task_id: int) -> sqlite3.Row:
        row = conn.execute(f"SELECT {self.TASK_COLUMNS} FROM task WHERE id=?", (task_id,)).fetchone()
        if row is None:
            raise TaskNotFound(f"task {task_id} does not exist")
        return row

    def add_task(self, topic_id: int, name: str, description: str) -> Task:
        now = now_stamp()
        with self._session("add task") as conn:
            cur = conn.execute(
                "INSERT INTO task(topic_id, name, description, completed, favourite, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (topic_id, name, description, 0, 0, now, now),
            )
            row = self._fetch_task(conn, cur.lastrowid)
        self.log.debug("Inserted task id=%s topic_id=%s", row["id"], topic_id)
        return task_from_row(row)

    def update_task(self, task_id: int, update: TaskUpdate) -> Task:
        cols = _encode_task_update(update, now_stamp())
        assignments = ", ".join(f"{name}=?" for name in cols)
        with self._session("update task") as conn:
            self._fetch_task(conn, task_id)
            conn.execute(f"UPDATE task SET {assignments} WHERE id=?", (*cols.values(), task_id))
            row = self._fetch_task(conn, task_id)
        return task_from_row(row)

    def toggle_task_completion(self, task_id: int) -> Task:
        current = self.get_task(task_id)
        return self.update_task(task_id, TaskUpdate(completed=not current.completed))

    def toggle_task_favourite(self, task_id: int) -> Task:
        current = self.get_task(task_id)
        return self.update_task(task_id, TaskUpdate(favourite=not current.favourite))

    def delete_task(self, task_id: int) -> int:
        with self._session("delete task") as conn:
            cur = conn.execute("DELETE FROM task WHERE id=?", (task_id,))
            return cur.rowcount


# -----------------------------
# Log buffer
# -----------------------------
class LogBuffer:
    """On-screen operation log; every entry is mirrored to the file logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.entries: List[str] = []
        self.offset = 0

    def add(self, level: str, message: str) -> str:
        level = level.upper()
        entry = f"{now_stamp()} [{level}] {message}"
        self.entries.append(entry)
        self.offset = 0
        self.logger.log(getattr(logging, level, logging.INFO), message)
        return entry

    def info(self, message: str) -> str:
        return self.add("INFO", message)

    def error(self, message: str) -> str:
        return self.add("ERROR", message)

    def scroll_back(self, lines: int = 1) -> None:
        self.offset = min(self.offset + lines, max(0, len(self.entries) - 1))

    def scroll_forward(self, lines: int = 1) -> None:
        self.offset = max(0, self.offset - lines)

    def visible(self, height: int) -> List[str]:
        if height <= 0:
            return []
        end = len(self.entries) - self.offset
        start = max(0, end - height)
        return self.entries[start:end]


# -----------------------------
# App state
# -----------------------------
class InputMode(Enum):
    NORMAL = "normal"
    ADDING_TASK = "adding_task"
    ADDING_TASK_NAME = "adding_task_name"
    ADDING_TASK_DESCRIPTION = "adding_task_description"
    EDITING_TASK = "editing_task"
    ADDING_TOPIC = "adding_topic"
    HELP = "help"


MODE_LABELS: Dict[InputMode, str] = {
    InputMode.NORMAL: "Normal Mode",
    InputMode.ADDING_TASK: "Add Mode",
    InputMode.ADDING_TASK_NAME: "Adding Task - Name Input",
    InputMode.ADDING_TASK_DESCRIPTION: "Adding Task - Description Input",
    InputMode.EDITING_TASK: "Editing Mode",
    InputMode.ADDING_TOPIC: "Adding Topic",
    InputMode.HELP: "Viewing Help",
}


class AppState:
    """Session state over a TaskRepository.

    The cached ``topics`` and ``tasks`` are only ever replaced by a fresh read
    after a write. Mutating operations return True when the store changed and
    False for policy no-ops or recoverable failures (see ``last_error``).
    """

    def __init__(self, repo: TaskRepository, log: Optional[LogBuffer] = None):
        self.repo = repo
        self.log = log or LogBuffer()
        self.topics: List[Topic] = []
        self.selected_topic = 0
        self.tasks: List[Task] = []
        self.selected = 0
        self.input_mode = InputMode.NORMAL
        self.input = ""
        self.task_name_input = ""
        self.task_description_input = ""
        self.expanded: Set[int] = set()
        self.show_help = False
        self.last_error: Optional[QueryError] = None

    @property
    def logs(self) -> List[str]:
        return self.log.entries

    @property
    def log_offset(self) -> int:
        return self.log.offset

    def startup(self) -> None:
        self.load_topics()
        for kind in SPECIAL_TOPICS:
            if not any(t.kind is kind for t in self.topics):
                self.repo.add_topic(kind.value, SPECIAL_TOPIC_DESCRIPTIONS[kind])
                self.log.info(f"Created topic: {kind.value}")
                self.load_topics()
        self.log.info("Topics loaded")
        self.selected_topic = 0
        for i, topic in enumerate(self.topics):
            if topic.kind is TopicKind.FAVOURITES:
                self.selected_topic = i
                break
        self.load_tasks()
        self.log.info("Tasks loaded")
        self.log.info("Application started")

    # --- cache ---
    def load_topics(self) -> None:
        self.topics = self.repo.load_topics()
        if self.selected_topic >= len(self.topics):
            self.selected_topic = max(0, len(self.topics) - 1)

    def load_tasks(self) -> None:
        topic = self.current_topic()
        self.tasks = self.repo.load_tasks(topic) if topic is not None else []
        if not self.tasks:
            self.selected = 0
        elif self.selected >= len(self.tasks):
            self.selected = len(self.tasks) - 1

    def current_topic(self) -> Optional[Topic]:
        if not self.topics:
            return None
        return self.topics[self.selected_topic]

    def current_task(self) -> Optional[Task]:
        if 0 <= self.selected < len(self.tasks):
            return self.tasks[self.selected]
        return None

    def current_topic_is_favourites(self) -> bool:
        topic = self.current_topic()
        return topic is not None and topic.kind is TopicKind.FAVOURITES

    def current_topic_is_special(self) -> bool:
        topic = self.current_topic()
        return topic is not None and topic.kind in (TopicKind.FAVOURITES, TopicKind.DEFAULT)

    def _failed(self, action: str, exc: QueryError) -> bool:
        self.last_error = exc
        self.log.error(f"Failed to {action}: {exc}")
        return False

    def _refresh_tasks(self) -> None:
        try:
            self.load_tasks()
        except QueryError as exc:
            self._failed("reload tasks", exc)

    def _refresh_topics(self) -> bool:
        try:
            self.load_topics()
        except QueryError as exc:
            return self._failed("reload topics", exc)
        return True

    # --- navigation ---
    def move_selection(self, delta: int) -> None:
        if not self.tasks:
            self.selected = 0
            return
        self.selected = max(0, min(len(self.tasks) - 1, self.selected + delta))

    def switch_topic(self, delta: int) -> bool:
        if not self.topics:
            return False
        target = max(0, min(len(self.topics) - 1, self.selected_topic + delta))
        if target == self.selected_topic:
            return False
        try:
            tasks = self.repo.load_tasks(self.topics[target])
        except QueryError as exc:
            return self._failed("load tasks", exc)
        self.selected_topic = target
        self.selected = 0
        self.tasks = tasks
        return True

    def toggle_expanded(self) -> None:
        task = self.current_task()
        if task is None:
            return
        if task.id in self.expanded:
            self.expanded.discard(task.id)
        else:
            self.expanded.add(task.id)

    def reset_task_inputs(self) -> None:
        self.task_name_input = ""
        self.task_description_input = ""

    # --- tasks ---
    # A failed reload after a committed write logs its own error.
    def add_task(self, description: str) -> bool:
        return self._insert_task(quick_task_name(description), description, f"Added task: {description}")

    def add_task_with_details(self, name: str, description: str) -> bool:
        return self._insert_task(name, description, f"Added task: {name} - {description}")

    def _insert_task(self, name: str, description: str, message: str) -> bool:
        self.last_error = None
        topic = self.current_topic()
        if topic is None or topic.kind is TopicKind.FAVOURITES:
            return False
        try:
            self.repo.add_task(topic.id, name, description)
        except QueryError as exc:
            return self._failed("add task", exc)
        self.log.info(message)
        self._refresh_tasks()
        return True

    def toggle_task(self) -> bool:
        self.last_error = None
        task = self.current_task()
        if task is None:
            return False
        try:
            self.repo.toggle_task_completion(task.id)
        except QueryError as exc:
            return self._failed("toggle task", exc)
        self.log.info(f"Toggled task id: {task.id}")
        self._refresh_tasks()
        return True

    def toggle_favourite(self) -> bool:
        self.last_error = None
        task = self.current_task()
        if task is None:
            return False
        try:
            self.repo.toggle_task_favourite(task.id)
        except QueryError as exc:
            return self._failed("toggle favourite", exc)
        self.log.info(f"Toggled favourite for task id: {task.id}")
        self._refresh_tasks()
        return True

    def edit_task(self, description: str) -> bool:
        self.last_error = None
        task = self.current_task()
        if task is None:
            return False
        update = TaskUpdate(
            name=task.name,
            description=description,
            completed=task.completed,
            favourite=task.favourite,
        )
        try:
            self.repo.update_task(task.id, update)
        except QueryError as exc:
            return self._failed("edit task", exc)
        self.log.info(f"Successfully edited task, with id: {task.id}")
        self._refresh_tasks()
        return True

    def delete_task(self) -> bool:
        self.last_error = None
        task = self.current_task()
        if task is None:
            return False
        try:
            self.repo.delete_task(task.id)
        except QueryError as exc:
            return self._failed("delete task", exc)
        self.expanded.discard(task.id)
        self.log.info(f"Deleted task id: {task.id}")
        self._refresh_tasks()
        if self.selected > 0 and self.selected >= len(self.tasks):
            self.selected -= 1
        return True

    # --- topics ---
    def add_topic(self, name: str) -> bool:
        self.last_error = None
        try:
            self.repo.add_topic(name, "")
        except QueryError as exc:
            return self._failed("add topic", exc)
        self.log.info(f"Added topic: {name}")
        self._refresh_topics()
        return True

    def delete_topic(self) -> bool:
        self.last_error = None
        topic = self.current_topic()
        if topic is None:
            return False
        try:
            deleted = self.repo.delete_topic(topic.id)
        except QueryError as exc:
            return self._failed("delete topic", exc)
        if not deleted:
            return False
        self.log.info(f"Deleted topic: {topic.name}")
        if self._refresh_topics():
            self.selected_topic = 0
            self.selected = 0
            self._refresh_tasks()
        return True


def open_app(db_path: str, logger: Optional[logging.Logger] = None) -> AppState:
    """Open the store, bootstrap special topics and load the Favourites view.

    StoreUnavailable propagates; there is nothing to recover to.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    logger.info("Opening task store at %s", db_path)
    log = LogBuffer(logger)
    repo = TaskRepository(db_path, logger=logger)
    log.info(f"Store opened: {db_path}")
    log.info("Schema ready")
    state = AppState(repo, log)
    state.startup()
    return state


# -----------------------------
# Input modes
# -----------------------------
class EventKind(Enum):
    CHAR = "char"
    BACKSPACE = "backspace"
    COMMIT = "commit"
    CANCEL = "cancel"
    BACK = "back"
    UP = "up"
    DOWN = "down"
    TOPIC_LEFT = "topic_left"
    TOPIC_RIGHT = "topic_right"
    LOG_UP = "log_up"
    LOG_DOWN = "log_down"
    ADD_TASK = "add_task"
    QUICK_ADD = "quick_add"
    EDIT_TASK = "edit_task"
    DELETE_TASK = "delete_task"
    TOGGLE_DONE = "toggle_done"
    TOGGLE_FAVOURITE = "toggle_favourite"
    EXPAND = "expand"
    ADD_TOPIC = "add_topic"
    DELETE_TOPIC = "delete_topic"
    HELP = "help"
    QUIT = "quit"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    text: str = ""


TEXT_MODES = (
    InputMode.ADDING_TASK,
    InputMode.ADDING_TASK_NAME,
    InputMode.ADDING_TASK_DESCRIPTION,
    InputMode.EDITING_TASK,
    InputMode.ADDING_TOPIC,
)

# Buffer each text-entry mode types into.
_BUFFERS: Dict[InputMode, str] = {
    InputMode.ADDING_TASK: "input",
    InputMode.ADDING_TASK_NAME: "task_name_input",
    InputMode.ADDING_TASK_DESCRIPTION: "task_description_input",
    InputMode.EDITING_TASK: "input",
    InputMode.ADDING_TOPIC: "input",
}


def _enter(state: AppState, mode: InputMode) -> None:
    state.input_mode = mode
    if mode is InputMode.ADDING_TASK_NAME:
        state.reset_task_inputs()
    elif mode is InputMode.HELP:
        state.show_help = True
    else:
        state.input = ""


def _back_to_normal(state: AppState) -> None:
    state.input = ""
    state.reset_task_inputs()
    state.show_help = False
    state.input_mode = InputMode.NORMAL


def _handle_normal(state: AppState, event: Event) -> bool:
    kind = event.kind
    if kind is EventKind.QUIT:
        return False
    if kind is EventKind.UP:
        state.move_selection(-1)
    elif kind is EventKind.DOWN:
        state.move_selection(1)
    elif kind is EventKind.TOPIC_LEFT:
        state.switch_topic(-1)
    elif kind is EventKind.TOPIC_RIGHT:
        state.switch_topic(1)
    elif kind is EventKind.LOG_UP:
        state.log.scroll_back()
    elif kind is EventKind.LOG_DOWN:
        state.log.scroll_forward()
    elif kind in (EventKind.EXPAND, EventKind.COMMIT):
        state.toggle_expanded()
    elif kind is EventKind.ADD_TASK:
        if not state.current_topic_is_favourites():
            _enter(state, InputMode.ADDING_TASK_NAME)
    elif kind is EventKind.QUICK_ADD:
        if not state.current_topic_is_favourites():
            _enter(state, InputMode.ADDING_TASK)
    elif kind is EventKind.EDIT_TASK:
        if state.current_task() is not None:
            _enter(state, InputMode.EDITING_TASK)
    elif kind is EventKind.ADD_TOPIC:
        _enter(state, InputMode.ADDING_TOPIC)
    elif kind is EventKind.DELETE_TASK:
        state.delete_task()
    elif kind is EventKind.TOGGLE_DONE:
        state.toggle_task()
    elif kind is EventKind.TOGGLE_FAVOURITE:
        state.toggle_favourite()
    elif kind is EventKind.DELETE_TOPIC:
        if not state.current_topic_is_special():
            state.delete_topic()
    elif kind is EventKind.HELP:
        _enter(state, InputMode.HELP)
    return True


def _commit(state: AppState) -> None:
    mode = state.input_mode
    if mode is InputMode.ADDING_TASK_NAME:
        if state.task_name_input:
            state.input_mode = InputMode.ADDING_TASK_DESCRIPTION
        return
    if mode is InputMode.ADDING_TASK_DESCRIPTION:
        if not state.task_name_input:
            return
        state.add_task_with_details(state.task_name_input, state.task_description_input)
    else:
        if not state.input:
            return
        if mode is InputMode.ADDING_TASK:
            state.add_task(state.input)
        elif mode is InputMode.EDITING_TASK:
            state.edit_task(state.input)
        elif mode is InputMode.ADDING_TOPIC:
            state.add_topic(state.input)
    _back_to_normal(state)


def _handle_text(state: AppState, event: Event) -> bool:
    kind = event.kind
    attr = _BUFFERS[state.input_mode]
    if kind is EventKind.CHAR:
        setattr(state, attr, getattr(state, attr) + event.text)
    elif kind is EventKind.BACKSPACE:
        setattr(state, attr, getattr(state, attr)[:-1])
    elif kind is EventKind.CANCEL:
        _back_to_normal(state)
    elif kind is EventKind.COMMIT:
        _commit(state)
    elif kind is EventKind.BACK and state.input_mode is InputMode.ADDING_TASK_DESCRIPTION:
        state.input_mode = InputMode.ADDING_TASK_NAME
    return True


def _handle_help(state: AppState, event: Event) -> bool:
    if event.kind in (EventKind.CANCEL, EventKind.HELP):
        _back_to_normal(state)
    return True


def handle_event(state: AppState, event: Event) -> bool:
    """Apply one event in the current mode; False means end the session."""
    if state.input_mode is InputMode.NORMAL:
        return _handle_normal(state, event)
    if state.input_mode is InputMode.HELP:
        return _handle_help(state, event)
    return _handle_text(state, event)


# -----------------------------
# TUI
# -----------------------------
BASE_STYLE: Dict[str, str] = {
    'frame.border': '#5f5f5f',
    'frame.label': 'bold #ffd75f',
    'topic': '#d0d0d0',
    'topic.selected': 'bold #ffd75f',
    'topic.divider': '#5f5f5f',
    'task.pending': '#5fd7ff',
    'task.done': '#87ff5f',
    'task.selected': 'bg:#005fd7 #ffffff bold',
    'task.meta': '#8a8a8a',
    'instructions': '#5fd75f',
    'instructions.key': '#ffd75f',
    'mode': '#f0f0f0',
    'log.info': '#d0d0d0',
    'log.error': 'bold #ff8787',
    'popup': 'bg:#1c1c1c #f0f0f0',
    'popup.title': 'bold #ffd75f',
    'popup.field': '#8a8a8a',
    'popup.field.active': '#ffd75f',
    'help.title': 'bold #87afff',
    'help.label': 'bold #5fd7d7',
    'help.key': 'bold #ffd75f',
}

LOG_PANEL_LINES = 13

NORMAL_KEYMAP: Dict[object, EventKind] = {
    'q': EventKind.QUIT,
    'a': EventKind.ADD_TASK,
    'A': EventKind.QUICK_ADD,
    'e': EventKind.EDIT_TASK,
    'd': EventKind.DELETE_TASK,
    't': EventKind.TOGGLE_DONE,
    'f': EventKind.TOGGLE_FAVOURITE,
    'H': EventKind.HELP,
    '?': EventKind.HELP,
    'N': EventKind.ADD_TOPIC,
    'X': EventKind.DELETE_TOPIC,
    'j': EventKind.DOWN,
    'k': EventKind.UP,
    'h': EventKind.TOPIC_LEFT,
    'l': EventKind.TOPIC_RIGHT,
    Keys.Down: EventKind.DOWN,
    Keys.Up: EventKind.UP,
    Keys.Left: EventKind.TOPIC_LEFT,
    Keys.Right: EventKind.TOPIC_RIGHT,
    Keys.PageUp: EventKind.LOG_UP,
    Keys.PageDown: EventKind.LOG_DOWN,
    Keys.Enter: EventKind.EXPAND,
}

TEXT_KEYMAP: Dict[object, EventKind] = {
    Keys.Enter: EventKind.COMMIT,
    Keys.Escape: EventKind.CANCEL,
    Keys.Tab: EventKind.BACK,
    Keys.Backspace: EventKind.BACKSPACE,
}

HELP_KEYMAP: Dict[object, EventKind] = {
    Keys.Escape: EventKind.CANCEL,
    'H': EventKind.HELP,
    '?': EventKind.HELP,
}

HELP_LINES: List[Tuple[str, str, str]] = [
    ("Add Task:", "'a'", "opens a popup to create a new task with name and description."),
    ("Quick Add:", "'A'", "adds a task from a description only."),
    ("Edit Task:", "'e'", "to edit an existing task."),
    ("Toggle Complete:", "'t'", "to mark a task complete/incomplete."),
    ("Toggle Favourite:", "'f'", "to mark/unmark as favourite."),
    ("Delete Task:", "'d'", "to delete the selected task."),
    ("Expand/Collapse Task:", "Enter", "to toggle details."),
    ("Navigate Tasks:", "Up/Down or j/k", "to move between tasks."),
    ("Switch Topics:", "Left/Right or h/l", "to change topics."),
    ("Add Topic:", "'N'", "to add a new topic."),
    ("Delete Topic:", "'X'", "to delete the current topic (Favourites and Default are protected)."),
    ("Scroll Logs:", "PageUp/PageDown", "to scroll logs."),
    ("Toggle Help:", "'H' or Esc", "to hide help."),
    ("Quit:", "'q'", "to exit the application."),
]


def translate_key(mode: InputMode, key: object, data: str = "") -> Optional[Event]:
    """Map one key press to an Event for the given mode (None = ignored)."""
    if mode is InputMode.NORMAL:
        kind = NORMAL_KEYMAP.get(key)
        return Event(kind) if kind is not None else None
    if mode is InputMode.HELP:
        kind = HELP_KEYMAP.get(key)
        return Event(kind) if kind is not None else None
    kind = TEXT_KEYMAP.get(key)
    if kind is not None:
        return Event(kind)
    if not isinstance(key, Keys) and len(data) == 1 and data.isprintable():
        return Event(EventKind.CHAR, data)
    return None


def _sanitize(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def topic_fragments(state: AppState) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for i, topic in enumerate(state.topics):
        if i:
            frags.append(("class:topic.divider", " | "))
        style = "class:topic.selected" if i == state.selected_topic else "class:topic"
        frags.append((style, f" {topic.name} "))
    return frags


def task_fragments(state: AppState) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for the task list."""
    if not state.tasks:
        if state.current_topic_is_favourites():
            return [("class:task.meta", "No favourite tasks. Press 'f' on a task in another topic.")]
        return [("class:task.meta", "No tasks. Press 'a' to add one.")]
    frags: List[Tuple[str, str]] = []
    for i, task in enumerate(state.tasks):
        base = "class:task.done" if task.completed else "class:task.pending"
        marker = "=> " if i == state.selected else "   "
        name_style = base + " class:task.selected" if i == state.selected else base
        if frags:
            frags.append(("", "\n"))
        frags.append((name_style, f"{marker}{_sanitize(task.name)}"))
        if task.id in state.expanded:
            frags.append(("", "\n"))
            frags.append((base, f"   Description: {_sanitize(task.description)}"))
            frags.append(("", "\n"))
            frags.append((
                "class:task.meta",
                "   ID: {} | Completed: {} | Favourite: {} | Created: {} | Updated: {}".format(
                    task.id,
                    "Yes" if task.completed else "No",
                    "Yes" if task.favourite else "No",
                    task.created_at,
                    task.updated_at,
                ),
            ))
    return frags


def selected_line(state: AppState) -> int:
    """Row of the selected task inside task_fragments output."""
    line = 0
    for task in state.tasks[:state.selected]:
        line += 3 if task.id in state.expanded else 1
    return line


def instruction_fragments(state: AppState) -> List[Tuple[str, str]]:
    prompts = {
        InputMode.ADDING_TASK: "Enter task description (Press Enter to add, Esc to cancel): ",
        InputMode.ADDING_TOPIC: "Enter topic name (Press Enter to add, Esc to cancel): ",
        InputMode.EDITING_TASK: "Edit task description (Press Enter to save, Esc to cancel): ",
    }
    prompt = prompts.get(state.input_mode)
    if prompt is not None:
        return [("class:instructions", prompt), ("", state.input)]
    return [
        ("class:instructions", "Press "),
        ("class:instructions.key", "H"),
        ("class:instructions", " for help."),
    ]


def mode_text(state: AppState) -> str:
    return MODE_LABELS[state.input_mode]


def log_fragments(state: AppState, height: int = LOG_PANEL_LINES) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for entry in state.log.visible(height):
        if frags:
            frags.append(("", "\n"))
        style = "class:log.error" if "[ERROR]" in entry else "class:log.info"
        frags.append((style, entry))
    return frags


def help_fragments() -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = [("class:help.title", "Help - Available Operations"), ("", "\n\n")]
    for title, key, description in HELP_LINES:
        frags.append(("class:help.label", title))
        frags.append(("", " Press "))
        frags.append(("class:help.key", key))
        frags.append(("", f" {description}\n"))
    return frags


def add_task_popup_fragments(state: AppState) -> List[Tuple[str, str]]:
    naming = state.input_mode is InputMode.ADDING_TASK_NAME
    name_style = "class:popup.field.active" if naming else "class:popup.field"
    desc_style = "class:popup.field" if naming else "class:popup.field.active"
    if naming:
        hint = "Enter task name and press Enter to continue. (Esc to cancel)"
    else:
        hint = "Enter task description and press Enter to save. (Tab to edit name, Esc to cancel)"
    return [
        ("class:popup.title", "Create New Task"),
        ("", "\n\n"),
        (name_style, "Task Name: "),
        ("", state.task_name_input),
        ("", "\n\n"),
        (desc_style, "Task Description: "),
        ("", state.task_description_input),
        ("", "\n\n"),
        ("", hint),
    ]


def build_key_bindings(state: AppState) -> KeyBindings:
    kb = KeyBindings()

    @kb.add('c-c')
    def _(event):
        event.app.exit()

    @kb.add(Keys.Any)
    def _(event):
        press = event.key_sequence[0]
        ev = translate_key(state.input_mode, press.key, press.data)
        if ev is None:
            return
        if not handle_event(state, ev):
            event.app.exit()

    return kb


def run_ui(state: AppState) -> None:
    """Full-screen topic/task browser; returns when the user quits."""
    is_help = Condition(lambda: state.show_help)
    is_adding = Condition(lambda: state.input_mode in (InputMode.ADDING_TASK_NAME, InputMode.ADDING_TASK_DESCRIPTION))

    topics_window = Window(FormattedTextControl(lambda: topic_fragments(state)), height=1)
    tasks_window = Window(
        FormattedTextControl(
            lambda: task_fragments(state),
            get_cursor_position=lambda: Point(x=0, y=selected_line(state)),
        ),
        wrap_lines=True,
    )
    instructions_window = Window(FormattedTextControl(lambda: instruction_fragments(state)), height=1)
    mode_window = Window(FormattedTextControl(lambda: [("class:mode", mode_text(state))]), height=1)
    logs_window = Window(
        FormattedTextControl(lambda: log_fragments(state, LOG_PANEL_LINES)),
        height=Dimension.exact(LOG_PANEL_LINES),
    )
    body = HSplit([
        Frame(topics_window, title="Topics"),
        Frame(tasks_window, title="Tasks"),
        Frame(instructions_window, title="Instructions"),
        Frame(mode_window, title="Mode"),
        Frame(logs_window, title="Logs"),
    ])

    help_window = Frame(
        Window(FormattedTextControl(help_fragments), wrap_lines=True, style="class:popup"),
        title="Help",
        width=Dimension(preferred=80),
    )
    add_window = Frame(
        Window(FormattedTextControl(lambda: add_task_popup_fragments(state)), wrap_lines=True, style="class:popup"),
        title="New Task",
        width=Dimension(preferred=70),
    )
    root = FloatContainer(
        content=body,
        floats=[
            Float(content=ConditionalContainer(help_window, filter=is_help)),
            Float(content=ConditionalContainer(add_window, filter=is_adding)),
        ],
    )

    app = Application(
        layout=Layout(root),
        key_bindings=build_key_bindings(state),
        style=Style.from_dict(BASE_STYLE),
        full_screen=True,
        refresh_interval=0.25,
    )
    app.run()


# -----------------------------
# CLI
# -----------------------------
def export_snapshot(state: AppState) -> Dict[str, List[Dict[str, object]]]:
    default = next((t for t in state.topics if t.kind is TopicKind.DEFAULT), None)
    tasks = state.repo.load_tasks(default) if default is not None else []
    return {
        "topics": [topic_to_row(t) for t in state.topics],
        "tasks": [task_to_row(t) for t in tasks],
    }


def summarize(state: AppState) -> List[str]:
    snapshot = export_snapshot(state)
    tasks = snapshot["tasks"]
    done_ct = sum(1 for t in tasks if t["completed"])
    fav_ct = sum(1 for t in tasks if t["favourite"])
    return [
        "Topics: " + ", ".join(t.name for t in state.topics),
        f"Tasks: {len(tasks)} (done {done_ct}, favourite {fav_ct})",
    ]


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Terminal task tracker organised by topics")
    ap.add_argument("--config", help="Path to optional YAML config")
    ap.add_argument("--db", help="Path to sqlite DB (overrides config and environment)")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--no-ui", action="store_true", help="Print a short summary and exit")
    ap.add_argument("--export", metavar="PATH", help="Write all topics and tasks to PATH (JSON) and exit")
    args = ap.parse_args(argv)

    try:
        cfg = resolve_config(args.config, args.db, args.log_level)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    db_dir = os.path.dirname(cfg.db_path)
    if db_dir and not os.path.isdir(db_dir):
        os.makedirs(db_dir, exist_ok=True)
    logger = setup_logging(cfg.log_path, cfg.log_level)

    try:
        state = open_app(cfg.db_path, logger)
    except StoreUnavailable as e:
        logger.error("Unable to open task store: %s", e)
        print(f"Unable to open task store: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.export:
            try:
                with open(args.export, "w", encoding="utf-8") as f:
                    json.dump(export_snapshot(state), f, indent=2)
            except OSError as e:
                logger.error("Failed to write export: %s", e)
                print(f"Failed to write export: {e}", file=sys.stderr)
                sys.exit(1)
            print(f"Wrote {args.export}")
            return
        if args.no_ui:
            for line in summarize(state):
                print(line)
            return
        run_ui(state)
        logger.info("Application exited")
    finally:
        state.repo.close()


if __name__ == "__main__":
    main()
