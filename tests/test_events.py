import importlib
import json
from datetime import datetime, timezone


class FakeLogger:
    def __init__(self):
        self.lines = []

    def info(self, msg):
        self.lines.append(str(msg))


def test_event_bus_logs_structured_json():
    events = importlib.import_module('core.events')
    fake_logger = FakeLogger()
    bus = events.EventBus(structured_logs=True, dry_run=False, debug_logging=False, logger=fake_logger)

    at = datetime(2024, 6, 1, tzinfo=timezone.utc)
    bus.log('execute', rule='r1', id='42', at=at, sources={'Tautulli'})
    payload = json.loads(fake_logger.lines[0])
    assert payload == {'event': 'execute', 'rule': 'r1', 'id': '42', 'at': at.isoformat(), 'sources': ['Tautulli']}


def test_event_bus_marks_dry_run_and_plain_text():
    events = importlib.import_module('core.events')
    fake_logger = FakeLogger()
    bus = events.EventBus(structured_logs=False, dry_run=True, debug_logging=False, logger=fake_logger)
    bus.log('dry_execute', id='7')
    assert fake_logger.lines == ["dry_execute: {'id': '7', 'dry_run': True}"]


def test_rule_event_adds_rule_identity():
    events = importlib.import_module('core.events')
    fake_logger = FakeLogger()
    bus = events.EventBus(structured_logs=True, dry_run=False, debug_logging=False, logger=fake_logger)

    class R:
        id = 'r1'
        name = 'Old movies'

    bus.rule_event('run_start', R(), trigger='schedule')
    payload = json.loads(fake_logger.lines[0])
    assert payload == {'event': 'run_start', 'trigger': 'schedule', 'rule': 'r1', 'rule_name': 'Old movies'}
