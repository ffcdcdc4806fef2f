from types import SimpleNamespace

import pytest
from prompt_toolkit.key_binding.key_processor import KeyPress
from prompt_toolkit.keys import Keys

import task_topics as tt


class DummyApp:
    def __init__(self):
        self.exited = False

    def exit(self):
        self.exited = True


def dummy_event(key, data=None):
    return SimpleNamespace(key_sequence=[KeyPress(key, data)], app=DummyApp())


def get_binding(kb, key):
    for binding in kb.bindings:
        if binding.keys == (key,):
            return binding.handler
    raise AssertionError(f"Binding for {key!r} not found")


def press(state, kb, key, data=None):
    handler = get_binding(kb, Keys.Any)
    event = dummy_event(key, data)
    handler(event)
    return event.app.exited


def type_text(state, kb, text):
    for ch in text:
        press(state, kb, ch)


@pytest.mark.parametrize('key,kind', [
    ('q', tt.EventKind.QUIT),
    ('a', tt.EventKind.ADD_TASK),
    ('A', tt.EventKind.QUICK_ADD),
    ('e', tt.EventKind.EDIT_TASK),
    ('d', tt.EventKind.DELETE_TASK),
    ('t', tt.EventKind.TOGGLE_DONE),
    ('f', tt.EventKind.TOGGLE_FAVOURITE),
    ('N', tt.EventKind.ADD_TOPIC),
    ('X', tt.EventKind.DELETE_TOPIC),
    ('H', tt.EventKind.HELP),
    ('?', tt.EventKind.HELP),
    ('j', tt.EventKind.DOWN),
    ('k', tt.EventKind.UP),
    ('h', tt.EventKind.TOPIC_LEFT),
    ('l', tt.EventKind.TOPIC_RIGHT),
    (Keys.Down, tt.EventKind.DOWN),
    (Keys.Up, tt.EventKind.UP),
    (Keys.Left, tt.EventKind.TOPIC_LEFT),
    (Keys.Right, tt.EventKind.TOPIC_RIGHT),
    (Keys.PageUp, tt.EventKind.LOG_UP),
    (Keys.PageDown, tt.EventKind.LOG_DOWN),
    (Keys.Enter, tt.EventKind.EXPAND),
])
def test_normal_mode_keymap(key, kind):
    data = key if isinstance(key, str) and not isinstance(key, Keys) else ''
    assert tt.translate_key(tt.InputMode.NORMAL, key, data) == tt.Event(kind)


def test_unmapped_normal_key_is_ignored():
    assert tt.translate_key(tt.InputMode.NORMAL, 'z', 'z') is None
    assert tt.translate_key(tt.InputMode.NORMAL, Keys.F5, '') is None


def test_text_mode_keymap():
    mode = tt.InputMode.ADDING_TASK_DESCRIPTION
    assert tt.translate_key(mode, 'q', 'q') == tt.Event(tt.EventKind.CHAR, 'q')
    assert tt.translate_key(mode, 'H', 'H') == tt.Event(tt.EventKind.CHAR, 'H')
    assert tt.translate_key(mode, ' ', ' ') == tt.Event(tt.EventKind.CHAR, ' ')
    assert tt.translate_key(mode, Keys.Enter, '\r') == tt.Event(tt.EventKind.COMMIT)
    assert tt.translate_key(mode, Keys.Escape, '\x1b') == tt.Event(tt.EventKind.CANCEL)
    assert tt.translate_key(mode, Keys.Tab, '\t') == tt.Event(tt.EventKind.BACK)
    assert tt.translate_key(mode, Keys.Backspace, '\x7f') == tt.Event(tt.EventKind.BACKSPACE)
    assert tt.translate_key(mode, Keys.Up, '') is None


def test_help_mode_keymap():
    mode = tt.InputMode.HELP
    assert tt.translate_key(mode, Keys.Escape, '') == tt.Event(tt.EventKind.CANCEL)
    assert tt.translate_key(mode, 'H', 'H') == tt.Event(tt.EventKind.HELP)
    assert tt.translate_key(mode, 'q', 'q') is None


def test_ctrl_c_exits(app):
    kb = tt.build_key_bindings(app)
    handler = get_binding(kb, Keys.ControlC)
    event = dummy_event(Keys.ControlC)
    handler(event)
    assert event.app.exited


def test_q_exits_from_normal_mode(app):
    kb = tt.build_key_bindings(app)
    assert press(app, kb, 'q') is True


def test_typing_in_popup_does_not_trigger_hotkeys(work_app):
    kb = tt.build_key_bindings(work_app)
    press(work_app, kb, 'a')
    assert work_app.input_mode is tt.InputMode.ADDING_TASK_NAME
    type_text(work_app, kb, 'quit')
    assert work_app.task_name_input == 'quit'
    press(work_app, kb, Keys.Enter)
    type_text(work_app, kb, 'delete')
    assert press(work_app, kb, Keys.Enter) is False
    assert [(t.name, t.description) for t in work_app.tasks] == [('quit', 'delete')]
    assert work_app.input_mode is tt.InputMode.NORMAL


def test_escape_cancels_and_tab_goes_back(work_app):
    kb = tt.build_key_bindings(work_app)
    press(work_app, kb, 'a')
    type_text(work_app, kb, 'n')
    press(work_app, kb, Keys.Enter)
    press(work_app, kb, Keys.Tab)
    assert work_app.input_mode is tt.InputMode.ADDING_TASK_NAME
    press(work_app, kb, Keys.Escape)
    assert work_app.input_mode is tt.InputMode.NORMAL
    assert work_app.task_name_input == ''


def test_navigation_keys_drive_state(app):
    kb = tt.build_key_bindings(app)
    press(app, kb, 'l')
    assert app.current_topic().name == 'Default'
    press(app, kb, Keys.Right)
    assert app.current_topic().name == 'Completed'
    press(app, kb, Keys.Left)
    assert app.current_topic().name == 'Default'


def test_help_toggle_keys(app):
    kb = tt.build_key_bindings(app)
    press(app, kb, '?')
    assert app.show_help
    assert press(app, kb, 'q') is False
    press(app, kb, 'H')
    assert not app.show_help


def test_task_fragments_mark_selection_and_expand(work_app):
    work_app.add_task_with_details('First', 'one')
    work_app.add_task_with_details('Second', 'two')
    work_app.selected = 1
    text = ''.join(t for _, t in tt.task_fragments(work_app))
    assert text.splitlines() == ['   First', '=> Second']
    work_app.expanded.add(work_app.tasks[0].id)
    lines = ''.join(t for _, t in tt.task_fragments(work_app)).splitlines()
    assert lines[0] == '   First'
    assert lines[1] == '   Description: one'
    assert lines[2].startswith('   ID: ')
    assert 'Completed: No' in lines[2]
    assert lines[3] == '=> Second'
    assert tt.selected_line(work_app) == 3


def test_task_fragment_styles_follow_completion(work_app):
    work_app.add_task('done one')
    work_app.toggle_task()
    work_app.add_task('open one')
    styles = [s for s, t in tt.task_fragments(work_app) if t.strip()]
    assert styles[0].startswith('class:task.done')
    assert 'class:task.selected' in styles[0]
    assert styles[1] == 'class:task.pending'


def test_empty_topic_placeholder(app):
    text = ''.join(t for _, t in tt.task_fragments(app))
    assert 'No favourite tasks' in text


def test_topic_and_mode_fragments(app):
    topics = tt.topic_fragments(app)
    assert ('class:topic.selected', ' Favourites ') in topics
    assert tt.mode_text(app) == 'Normal Mode'
    app.input_mode = tt.InputMode.ADDING_TASK_DESCRIPTION
    assert tt.mode_text(app) == 'Adding Task - Description Input'


def test_instruction_fragments_show_input(work_app):
    assert ''.join(t for _, t in tt.instruction_fragments(work_app)) == 'Press H for help.'
    tt.handle_event(work_app, tt.Event(tt.EventKind.ADD_TOPIC))
    tt.handle_event(work_app, tt.Event(tt.EventKind.CHAR, 'x'))
    text = ''.join(t for _, t in tt.instruction_fragments(work_app))
    assert text.startswith('Enter topic name')
    assert text.endswith('x')


def test_popup_fragments_highlight_active_field(work_app):
    tt.handle_event(work_app, tt.Event(tt.EventKind.ADD_TASK))
    frags = tt.add_task_popup_fragments(work_app)
    assert ('class:popup.field.active', 'Task Name: ') in frags
    tt.handle_event(work_app, tt.Event(tt.EventKind.CHAR, 'n'))
    tt.handle_event(work_app, tt.Event(tt.EventKind.COMMIT))
    frags = tt.add_task_popup_fragments(work_app)
    assert ('class:popup.field.active', 'Task Description: ') in frags
    assert ('', 'n') in frags


def test_log_fragments_style_errors(app):
    app.log.error('Failed to add task: boom')
    frags = tt.log_fragments(app, 2)
    texts = [t for _, t in frags if t != '\n']
    assert len(texts) == 2
    assert frags[-1][0] == 'class:log.error'


def test_help_fragments_list_every_operation():
    text = ''.join(t for _, t in tt.help_fragments())
    for title, _key, _desc in tt.HELP_LINES:
        assert title in text
