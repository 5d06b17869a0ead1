from __future__ import annotations

import json
from pathlib import Path

import pytest
from loguru import logger

from crew_board.cli import main

NOW = 1_760_011_200_000


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger.remove()


def _run(capsys: pytest.CaptureFixture[str], project: Path, *argv: str) -> tuple[int, dict, dict]:
    rc = main(['--project-dir', str(project), *argv])
    captured = capsys.readouterr()
    out = json.loads(captured.out) if captured.out.strip() else {}
    err = json.loads(captured.err) if captured.err.strip() else {}
    return rc, out, err


def _create(capsys, project: Path, *extra: str) -> dict:
    rc, out, _ = _run(capsys, project, 'task', 'create', 'CLI Task', '--done', 'it works', *extra)
    assert rc == 0
    return out['task']


def test_task_create_list_show(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path, '--priority', 'P1', '--tag', 'api', '--assignee', 'link')
    assert task['status'] == 'todo'
    assert task['metadata']['eta'] == '~2h'
    assert (tmp_path / '.crew_board' / 'tasks.yaml').exists()

    rc, out, _ = _run(capsys, tmp_path, 'task', 'list', '--assignee', 'link')
    assert rc == 0
    assert [t['id'] for t in out['tasks']] == [task['id']]

    rc, out, _ = _run(capsys, tmp_path, 'task', 'show', task['id'][:-3])
    assert rc == 0
    assert out['task']['title'] == 'CLI Task'


def test_task_create_defaults_to_p3(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path)
    assert task['priority'] == 'P3'
    assert task['metadata']['eta'] == '~1d'


def test_task_list_team_and_updated_since(tmp_path: Path, capsys) -> None:
    alpha = _create(capsys, tmp_path, '--team-id', 'alpha')
    _create(capsys, tmp_path)

    rc, out, _ = _run(capsys, tmp_path, 'task', 'list', '--team-id', 'alpha')
    assert rc == 0
    assert [t['id'] for t in out['tasks']] == [alpha['id']]

    rc, out, _ = _run(capsys, tmp_path, 'task', 'list', '--updated-since', str(alpha['updated_at']))
    assert rc == 0
    assert alpha['id'] in [t['id'] for t in out['tasks']]

    rc, out, _ = _run(capsys, tmp_path, 'task', 'list', '--updated-since', str(alpha['updated_at'] + 10 ** 9))
    assert rc == 0
    assert out['tasks'] == []


def test_task_list_table(tmp_path: Path, capsys) -> None:
    _create(capsys, tmp_path)
    rc = main(['--project-dir', str(tmp_path), 'task', 'list', '--table'])
    assert rc == 0
    assert 'CLI Task' in capsys.readouterr().out


def test_task_patch_and_delete(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path, '--assignee', 'link')

    rc, out, _ = _run(capsys, tmp_path, 'task', 'patch', task['id'], '--status', 'doing', '--actor', 'link')
    assert rc == 0
    assert out['task']['status'] == 'doing'
    assert 'status' in out['changed_fields']

    rc, out, _ = _run(capsys, tmp_path, 'task', 'delete', task['id'])
    assert rc == 0
    assert out == {'deleted': True, 'task_id': task['id']}

    rc, _, err = _run(capsys, tmp_path, 'task', 'show', task['id'])
    assert rc == 1
    assert err['code'] == 'NOT_FOUND'


def test_illegal_transition_reports_json_error(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path)
    rc, out, err = _run(capsys, tmp_path, 'task', 'patch', task['id'], '--status', 'done')
    assert rc == 1
    assert out == {}
    assert err['success'] is False
    assert err['code'] == 'STATE_TRANSITION_REJECTED'
    assert err['details'] == {'from': 'todo', 'to': 'done'}


def test_gate_rejection_names_the_gate(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path)
    rc, _, err = _run(
        capsys, tmp_path,
        'task', 'patch', task['id'], '--status', 'doing', '--metadata', '{"model": "gpt-99"}',
    )
    assert rc == 1
    assert err['gate'] == 'model_validation'
    assert 'hint' in err


def test_bad_json_and_empty_patch(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path)
    rc, _, err = _run(capsys, tmp_path, 'task', 'patch', task['id'], '--json', '[1, 2]')
    assert rc == 1
    assert '--json must be a JSON object' in err['error']

    rc, _, err = _run(capsys, tmp_path, 'task', 'patch', task['id'])
    assert rc == 1
    assert err['error'] == 'Nothing to patch'


def test_precheck_and_next(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path)

    rc, out, _ = _run(capsys, tmp_path, 'task', 'precheck', task['id'], 'validating')
    assert rc == 0
    assert out['ready'] is False

    rc, out, _ = _run(capsys, tmp_path, 'task', 'next', 'pixel')
    assert rc == 0
    assert out['task']['id'] == task['id']


def test_audit_and_sync_status(tmp_path: Path, capsys) -> None:
    task = _create(capsys, tmp_path, '--reviewer', 'harmony')

    rc, out, _ = _run(capsys, tmp_path, 'sync', 'status', '--pending')
    assert rc == 0
    assert out['status'] == {'pending': 1, 'synced': 0, 'total': 1}
    assert [row['record_id'] for row in out['pending']] == [task['id']]

    rc, out, _ = _run(capsys, tmp_path, 'audit', 'list', '--task-id', task['id'])
    assert rc == 0
    assert out == {'entries': []}


def test_assign_suggest(tmp_path: Path, capsys) -> None:
    rc, out, _ = _run(capsys, tmp_path, 'task', 'create', 'Fix CSS layout on dashboard', '--done', 'looks right')
    task_id = out['task']['id']

    rc, out, _ = _run(capsys, tmp_path, 'assign', 'suggest', task_id)
    assert rc == 0
    assert out['suggested'] == 'pixel'


def test_tick_dry_run(tmp_path: Path, capsys) -> None:
    rc, out, _ = _run(
        capsys, tmp_path,
        'tick', 'mention-rescue', '--dry-run', '--force', '--now-ms', str(NOW),
    )
    assert rc == 0
    assert out['kind'] == 'mention-rescue'
    assert out['at'] == NOW
    assert out['dry_run'] is True
    assert out['suppressed'] is False
    assert out['decisions'] == []
