import argparse
import importlib
import json

import pytest


def _write(path, data):
    with open(path, 'w') as f:
        f.write(json.dumps(data))


@pytest.fixture
def paths(monkeypatch, tmp_path):
    rules_path = tmp_path / 'rules.json'
    actions_path = tmp_path / 'actions.json'
    monkeypatch.setenv('RULES_FILE_PATH', str(rules_path))
    monkeypatch.setenv('ACTIONS_FILE_PATH', str(actions_path))
    return tmp_path


RULE = {
    'id': 'old-movies',
    'name': 'Old unwatched movies',
    'media_type': 'MOVIE',
    'action_type': 'FLAG_FOR_REVIEW',
    'schedule': '0 3 * * *',
    'criteria': {'operator': 'AND', 'conditions': [{'type': 'never_watched'}]},
}


def test_cli_rules_lifecycle(paths, capsys):
    cli = importlib.import_module('cli')
    rule_path = paths / 'rule.json'
    _write(rule_path, RULE)

    cli.main(['rules', 'add', str(rule_path)])
    created = json.loads(capsys.readouterr().out)
    assert created['id'] == 'old-movies'

    cli.main(['rules', 'disable', 'old-movies'])
    assert 'Disabled old-movies' in capsys.readouterr().out

    cli.main(['rules', 'list'])
    listed = json.loads(capsys.readouterr().out)
    assert listed == [{
        'id': 'old-movies',
        'name': 'Old unwatched movies',
        'enabled': False,
        'media_type': 'MOVIE',
        'action_type': 'FLAG_FOR_REVIEW',
        'schedule': '0 3 * * *',
        'last_run_status': None,
    }]

    cli.main(['rules', 'delete', 'old-movies'])
    capsys.readouterr()
    with pytest.raises(SystemExit) as exc:
        cli.main(['rules', 'show', 'old-movies'])
    assert exc.value.code == 1


def test_cli_rejects_invalid_rule(paths, capsys):
    cli = importlib.import_module('cli')
    rule_path = paths / 'rule.json'
    _write(rule_path, {**RULE, 'action_delay_days': -1})
    with pytest.raises(SystemExit) as exc:
        cli.main(['rules', 'add', str(rule_path)])
    assert exc.value.code == 2
    out = json.loads(capsys.readouterr().out)
    assert any('action_delay_days' in e for e in out['errors'])
    assert not (paths / 'rules.json').exists()


def test_cli_pending_and_results(paths, capsys):
    cli = importlib.import_module('cli')
    actions_path = paths / 'actions.json'
    _write(actions_path, {
        'pending_actions': [
            {
                'id': 'a1', 'rule_id': 'old-movies', 'media_external_id': '42', 'state': 'SCHEDULED',
                'first_matched_at': '2024-06-01T03:00:00+00:00', 'eligible_at': '2024-06-08T03:00:00+00:00',
                'action_type': 'AUTO_DELETE', 'media_type': 'MOVIE',
            },
            {
                'id': 'a2', 'rule_id': 'old-movies', 'media_external_id': '43', 'state': 'EXECUTED',
                'first_matched_at': '2024-05-01T03:00:00+00:00', 'eligible_at': '2024-05-08T03:00:00+00:00',
                'action_type': 'AUTO_DELETE', 'media_type': 'MOVIE', 'attempts': 1,
            },
        ],
        'execution_results': [
            {'id': 'x1', 'pending_action_id': 'a2', 'outcome': 'SUCCESS', 'executed_at': '2024-05-08T03:00:00+00:00'},
        ],
    })

    cli.cmd_pending(argparse.Namespace(rule=None, state=None, all=False))
    assert [a['id'] for a in json.loads(capsys.readouterr().out)] == ['a1']

    cli.cmd_pending(argparse.Namespace(rule='old-movies', state=None, all=True))
    assert [a['id'] for a in json.loads(capsys.readouterr().out)] == ['a2', 'a1']

    cli.cmd_results(argparse.Namespace(action='a2'))
    results = json.loads(capsys.readouterr().out)
    assert results[0]['outcome'] == 'SUCCESS'


def test_cli_simulate(paths, capsys):
    cli = importlib.import_module('cli')
    crit_path = paths / 'criteria.json'
    item_path = paths / 'item.json'
    _write(crit_path, {'operator': 'AND', 'conditions': [
        {'type': 'never_watched'},
        {'type': 'added_before', 'value': 365, 'unit': 'days'},
    ]})
    _write(item_path, {'id': 10, 'title': 'Old', 'play_count': 0, 'added_at': '2023-01-01T00:00:00Z'})

    cli.main(['simulate', str(crit_path), str(item_path), '--now', '2024-06-01T00:00:00Z'])
    out = json.loads(capsys.readouterr().out)
    assert out['matched'] is True
    assert out['trace'] == [[0, 'matched'], [1, 'matched']]
    assert out['explain'][0] == 'AND -> MATCH'


def test_cli_simulate_rejects_illegal_condition(paths, capsys):
    cli = importlib.import_module('cli')
    crit_path = paths / 'criteria.json'
    item_path = paths / 'item.json'
    _write(crit_path, {'operator': 'AND', 'conditions': [{'type': 'max_quality', 'value': '720p'}]})
    _write(item_path, {'id': 1, 'title': 'Show'})
    with pytest.raises(SystemExit) as exc:
        cli.main(['simulate', str(crit_path), str(item_path), '--media-type', 'TV_SERIES'])
    assert exc.value.code == 2


def test_cli_status(paths, capsys):
    cli = importlib.import_module('cli')
    rule_path = paths / 'rule.json'
    _write(rule_path, RULE)
    cli.main(['rules', 'add', str(rule_path)])
    capsys.readouterr()

    cli.cmd_status(argparse.Namespace())
    out = json.loads(capsys.readouterr().out)
    assert out['rules'] == 1
    assert out['enabled_rules'] == 1
    assert out['pending_by_state'] == {}
    assert out['failed_rules'] == []


def _flagged(action_id, ext, **kw):
    rec = {
        'id': action_id, 'rule_id': 'old-movies', 'media_external_id': ext, 'state': 'EXECUTED',
        'first_matched_at': '2024-05-01T03:00:00+00:00', 'eligible_at': '2024-05-01T03:00:00+00:00',
        'action_type': 'FLAG_FOR_REVIEW', 'media_type': 'MOVIE', 'attempts': 1,
        'closed_at': '2024-05-01T03:00:00+00:00', 'review_status': 'PENDING',
    }
    rec.update(kw)
    return rec


def test_cli_review_history_and_stats(paths, capsys):
    cli = importlib.import_module('cli')
    _write(paths / 'actions.json', {
        'pending_actions': [
            _flagged('f1', '10'),
            _flagged('f2', '11'),
            _flagged('d1', '12', action_type='AUTO_DELETE', review_status=None, file_size_bytes=2048),
        ],
        'execution_results': [],
    })

    cli.main(['review', 'list'])
    assert [a['id'] for a in json.loads(capsys.readouterr().out)] == ['f1', 'f2']

    cli.main(['review', 'approve', 'f1'])
    assert 'Approved 1 item(s)' in capsys.readouterr().out
    cli.main(['review', 'reject', 'f2'])
    capsys.readouterr()

    cli.main(['review', 'list', '--status', 'APPROVED'])
    assert [a['id'] for a in json.loads(capsys.readouterr().out)] == ['f1']

    with pytest.raises(SystemExit) as exc:
        cli.main(['review', 'approve', 'd1'])
    assert exc.value.code == 2
    assert json.loads(capsys.readouterr().out)['errors'] == ['d1: not a flagged item']

    cli.main(['history'])
    history = json.loads(capsys.readouterr().out)
    assert [(h['action'], h['file_size_bytes']) for h in history] == [('d1', 2048)]

    cli.main(['stats'])
    stats = json.loads(capsys.readouterr().out)
    assert stats['total_deletions'] == 1
    assert stats['bytes_freed'] == 2048
    assert stats['per_rule'] == {'old-movies': {'deletions': 1, 'bytes_freed': 2048}}
    assert stats['review'] == {'pending': 0, 'approved': 1, 'rejected': 1, 'deleted': 0}
