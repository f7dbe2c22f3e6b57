"""
API routes for the Site Compare Service.
"""

from datetime import datetime

from flask import Blueprint, jsonify, request
from pydantic import ValidationError

from sitecompare import scheduler
from sitecompare.compare.aggregator import aggregate
from sitecompare.compare.errors import ComparisonError
from sitecompare.compare.models import (
    ComparisonConfiguration,
    ComparisonOutcome,
    Credentials,
    as_naive_utc,
    utcnow,
)
from sitecompare.compare.orchestrator import validate_configuration
from sitecompare.compare.pairs import can_continue, generate_site_pairs, parse_site_pairs_csv
from sitecompare.db.stores import CredentialStore, TaskResultStore, TaskStore
from sitecompare.utils.logging import get_logger

logger = get_logger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _isoformat(value):
    return value.isoformat() if value else None


def _task_json(task):
    return {
        'task_id': task.task_id,
        'name': task.name,
        'status': task.status.value,
        'created_at': _isoformat(task.created_at),
        'last_run_at': _isoformat(task.last_run_at),
        'completed_at': _isoformat(task.completed_at),
        'last_error': task.last_error,
        'running': scheduler.is_running(task.task_id),
    }


def _site_json(site, include_items=True):
    data = site.model_dump(mode='json', exclude=None if include_items else {'items'})
    if include_items:
        for item, item_data in zip(site.items, data['items']):
            item_data['file_extension'] = item.file_extension
            item_data['size_difference_percent'] = round(item.size_difference_percent, 2)
    for lst, list_data in zip(site.lists, data['lists']):
        list_data['difference'] = lst.difference
        list_data['percent_difference'] = round(lst.percent_difference, 2)
    data.update({
        'total_source_documents': site.total_source_documents,
        'total_target_documents': site.total_target_documents,
        'percent_found': round(site.percent_found, 2),
        'percent_not_found': round(site.percent_not_found, 2),
        'percent_target_only': round(site.percent_target_only, 2),
        'has_issues': site.has_issues,
    })
    return data


def _not_found(task_id):
    return jsonify({'success': False, 'error': f'Task {task_id} not found'}), 404


@api_bp.route('/tasks')
def list_tasks():
    """List saved comparison tasks."""
    return jsonify([_task_json(t) for t in TaskStore().list()])


@api_bp.route('/tasks', methods=['POST'])
def create_task():
    """
    Create a comparison task.

    Site pairs can be given directly under ``configuration``, as CSV text in
    ``site_pairs_csv``, or generated from ``source_urls`` with
    ``source_domain`` and ``target_domain``.
    """
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    if not name:
        return jsonify({'success': False, 'error': 'Task name is required'}), 400

    try:
        configuration = ComparisonConfiguration.model_validate(data.get('configuration') or {})

        pairs = list(configuration.site_pairs)
        if data.get('site_pairs_csv'):
            pairs.extend(parse_site_pairs_csv(data['site_pairs_csv']))
        if data.get('source_urls'):
            pairs.extend(generate_site_pairs(
                data['source_urls'],
                data.get('source_domain', ''),
                data.get('target_domain', ''),
            ))
        configuration = configuration.model_copy(update={'site_pairs': pairs})

        validate_configuration(configuration)
    except ValidationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except ComparisonError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    task = TaskStore().create(name, configuration)
    logger.info("Created comparison task", task_id=task.task_id, site_pairs=len(pairs))
    return jsonify({'success': True, 'task': _task_json(task)}), 201


@api_bp.route('/tasks/<task_id>')
def get_task(task_id):
    """Get a task with its configuration."""
    task = TaskStore().get(task_id)
    if task is None:
        return _not_found(task_id)

    data = _task_json(task)
    try:
        data['configuration'] = task.configuration.model_dump(mode='json')
    except ComparisonError as e:
        data['configuration_error'] = str(e)
    return jsonify(data)


@api_bp.route('/tasks/<task_id>', methods=['DELETE'])
def delete_task(task_id):
    """Delete a task and its results."""
    if scheduler.is_running(task_id):
        return jsonify({'success': False, 'error': 'Task is running'}), 409
    if not TaskStore().delete(task_id):
        return _not_found(task_id)
    return jsonify({'success': True})


def _start(task_id, continue_from_previous):
    task = TaskStore().get(task_id)
    if task is None:
        return _not_found(task_id)

    try:
        config = task.configuration
        validate_configuration(config)
    except ComparisonError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    if continue_from_previous:
        latest = TaskResultStore().load_latest(task_id)
        if not can_continue(task.status, latest, config):
            return jsonify({
                'success': False,
                'error': 'Task has no interrupted run to continue'
            }), 409

    if not scheduler.start_run(task_id, continue_from_previous=continue_from_previous):
        return jsonify({'success': False, 'error': 'Task is already running'}), 409

    return jsonify({'success': True, 'task_id': task_id}), 202


@api_bp.route('/tasks/<task_id>/run', methods=['POST'])
def run_task(task_id):
    """Start a fresh run in the background."""
    return _start(task_id, continue_from_previous=False)


@api_bp.route('/tasks/<task_id>/continue', methods=['POST'])
def continue_task(task_id):
    """Continue the latest interrupted run in the background."""
    return _start(task_id, continue_from_previous=True)


@api_bp.route('/tasks/<task_id>/cancel', methods=['POST'])
def cancel_task(task_id):
    """Cancel a running task before its next site pair."""
    if not scheduler.cancel_run(task_id):
        return jsonify({'success': False, 'error': 'Task is not running'}), 409
    return jsonify({'success': True})


@api_bp.route('/tasks/<task_id>/status')
def task_status(task_id):
    """Get task status and progress of the current run."""
    task = TaskStore().get(task_id)
    if task is None:
        return _not_found(task_id)

    data = _task_json(task)
    progress = scheduler.get_progress(task_id)
    data['progress'] = {
        'percent_complete': progress.percent_complete,
        'message': progress.message,
    } if progress else None

    try:
        latest = TaskResultStore().load_latest(task_id)
        data['can_continue'] = can_continue(task.status, latest, task.configuration)
    except ComparisonError:
        data['can_continue'] = False
    return jsonify(data)


@api_bp.route('/tasks/<task_id>/result')
def latest_result(task_id):
    """
    Get the latest run result.

    Pass ``items=false`` to leave out per-document items.
    """
    include_items = request.args.get('items', 'true').lower() != 'false'

    result = TaskResultStore().load_latest(task_id)
    if result is None:
        return jsonify({'success': False, 'error': 'No results for this task'}), 404

    return jsonify({
        'task_id': result.task_id,
        'run_id': result.run_id,
        'status': result.status.value,
        'executed_at_utc': _isoformat(result.executed_at_utc),
        'completed_at_utc': _isoformat(result.completed_at_utc),
        'duration_seconds': result.duration.total_seconds(),
        'throttle_retry_count': result.throttle_retry_count,
        'successful_pairs': result.successful_pairs,
        'failed_pairs': result.failed_pairs,
        'site_results': [_site_json(s, include_items) for s in result.site_results],
        'execution_log': result.execution_log,
    })


@api_bp.route('/tasks/<task_id>/summary')
def result_summary(task_id):
    """Get run-level statistics for the latest run."""
    result = TaskResultStore().load_latest(task_id)
    if result is None:
        return jsonify({'success': False, 'error': 'No results for this task'}), 404

    summary = aggregate(result.site_results)
    data = summary.model_dump(mode='json')
    data.update({
        'run_id': result.run_id,
        'status': result.status.value,
        'throttle_retry_count': result.throttle_retry_count,
    })
    return jsonify(data)


@api_bp.route('/tasks/<task_id>/issues')
def sites_with_issues(task_id):
    """Get sites of the latest run that failed or have document issues."""
    result = TaskResultStore().load_latest(task_id)
    if result is None:
        return jsonify({'success': False, 'error': 'No results for this task'}), 404

    return jsonify([_site_json(s, include_items=False) for s in result.sites_with_issues()])


@api_bp.route('/tasks/<task_id>/items')
def comparison_items(task_id):
    """
    Get the compared documents of the latest run across all sites.

    ``?outcome=SizeIssue`` keeps items counted under that outcome.
    """
    result = TaskResultStore().load_latest(task_id)
    if result is None:
        return jsonify({'success': False, 'error': 'No results for this task'}), 404

    items = result.iter_items()
    outcome = request.args.get('outcome')
    if outcome:
        try:
            wanted = ComparisonOutcome(outcome)
        except ValueError:
            return jsonify({'success': False, 'error': f'Unknown outcome {outcome}'}), 400
        items = (i for i in items if wanted in i.outcomes)

    return jsonify([i.model_dump(mode='json') for i in items])


@api_bp.route('/credentials/<path:tenant_id>', methods=['PUT', 'POST'])
def store_credentials(tenant_id):
    """Store authentication cookies captured for a tenant."""
    data = request.get_json(silent=True) or {}
    fed_auth = data.get('fed_auth', '')
    rt_fa = data.get('rt_fa', '')
    if not fed_auth or not rt_fa:
        return jsonify({'success': False, 'error': 'fed_auth and rt_fa are required'}), 400

    expires_at = None
    if data.get('expires_at'):
        try:
            expires_at = datetime.fromisoformat(data['expires_at'])
        except ValueError:
            return jsonify({'success': False, 'error': 'expires_at must be an ISO timestamp'}), 400
        expires_at = as_naive_utc(expires_at)

    credentials = Credentials(
        tenant_id=tenant_id,
        fed_auth=fed_auth,
        rt_fa=rt_fa,
        user_email=data.get('user_email', ''),
        captured_at=utcnow(),
        expires_at=expires_at,
    )
    CredentialStore().put(tenant_id, credentials)
    logger.info("Stored credentials", tenant_id=tenant_id, user_email=credentials.user_email)

    return jsonify({
        'success': True,
        'tenant_id': tenant_id,
        'valid': credentials.is_valid,
    })


@api_bp.route('/credentials/<path:tenant_id>')
def credential_status(tenant_id):
    """Report whether usable credentials are stored for a tenant (never the cookies)."""
    credentials = CredentialStore().get(tenant_id)
    if credentials is None:
        return jsonify({'tenant_id': tenant_id, 'stored': False, 'valid': False})

    return jsonify({
        'tenant_id': tenant_id,
        'stored': True,
        'valid': credentials.is_valid,
        'user_email': credentials.user_email,
        'captured_at': _isoformat(credentials.captured_at),
        'expires_at': _isoformat(credentials.expires_at),
    })
