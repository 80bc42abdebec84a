from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException
from services.background_guard import acquire_background_lock
from services.errors import FilterNotFoundError, public_error_message
from services.filters_manager import get_filters_manager
from services.housekeeping import start_housekeeping
from services.logutil import log_exception_throttled

import logging
import os
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

app = Flask(__name__)

try:
    app.config.setdefault(
        'MAX_CONTENT_LENGTH',
        int((os.environ.get('MAX_CONTENT_LENGTH') or str(1024 * 1024)).strip()),
    )
except ValueError:
    app.config.setdefault('MAX_CONTENT_LENGTH', 1024 * 1024)


_disable_background = (os.environ.get('DISABLE_BACKGROUND') or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _start_background() -> None:
    manager = get_filters_manager()

    # Schedule the first update check and the periodic autoupdate (best-effort).
    try:
        is_first_run = manager.get_filters_update_last_check() is None
        manager.updater.schedule_filters_update(is_first_run)
    except Exception:
        log_exception_throttled(logger, 'app.schedule', interval_seconds=300, message='Failed to schedule filters update')

    # Daily cleanup of obsolete and removed custom filters (best-effort).
    try:
        start_housekeeping(manager, interval_seconds=24 * 60 * 60)
    except Exception:
        log_exception_throttled(logger, 'app.housekeeping', interval_seconds=300, message='Failed to start housekeeping')


if not _disable_background and acquire_background_lock():
    _start_background()


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _ids_from_body(data: Dict[str, Any]) -> List[int]:
    raw = data.get('ids')
    if not isinstance(raw, list):
        raise ValueError('"ids" must be a list of filter ids.')
    try:
        return [int(x) for x in raw]
    except (TypeError, ValueError):
        raise ValueError('"ids" must be a list of filter ids.')


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _update_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(payload)
    if 'updatedFilters' in out:
        out['updatedFilters'] = [f.to_dict() for f in out['updatedFilters']]
    return out


@app.errorhandler(FilterNotFoundError)
def _filter_not_found(e: FilterNotFoundError):
    return jsonify({'ok': False, 'error': public_error_message(e)}), 404


@app.errorhandler(ValueError)
def _bad_request(e: ValueError):
    return jsonify({'ok': False, 'error': public_error_message(e)}), 400


@app.route('/health')
def health():
    return jsonify({'ok': True})


@app.route('/api/filters', methods=['GET'])
def api_filters():
    manager = get_filters_manager()
    filters = sorted(manager.get_filters(), key=lambda f: (f.group_id, f.display_number, f.filter_id))
    return jsonify({
        'filters': [f.to_dict() for f in filters],
        'lastCheck': manager.get_filters_update_last_check(),
    })


@app.route('/api/filters/<int:filter_id>', methods=['GET'])
def api_filter(filter_id: int):
    manager = get_filters_manager()
    flt = manager.get_filter_by_id(filter_id)
    data = flt.to_dict()
    data['trusted'] = manager.is_trusted_filter(filter_id)
    return jsonify(data)


@app.route('/api/filters/<int:filter_id>', methods=['DELETE'])
def api_remove_filter(filter_id: int):
    get_filters_manager().remove_filter(filter_id)
    return jsonify({'ok': True})


@app.route('/api/filters/<int:filter_id>/enable', methods=['POST'])
def api_enable_filter(filter_id: int):
    manager = get_filters_manager()
    manager.get_filter_by_id(filter_id)
    manager.enable_and_update_filter(filter_id)
    return jsonify({'ok': True, 'queued': True}), 202


@app.route('/api/filters/enable', methods=['POST'])
def api_add_and_enable_filters():
    ids = _ids_from_body(_json_body())
    get_filters_manager().add_and_enable_filters(ids)
    return jsonify({'ok': True, 'queued': True}), 202


@app.route('/api/filters/disable', methods=['POST'])
def api_disable_filters():
    ids = _ids_from_body(_json_body())
    get_filters_manager().disable_filters(ids)
    return jsonify({'ok': True})


@app.route('/api/filters/check-updates', methods=['POST'])
def api_check_updates():
    data = _json_body()
    force = _as_bool(data.get('force'))
    future = get_filters_manager().check_anti_banner_filters_update(force)
    if not _as_bool(data.get('wait')):
        return jsonify({'ok': True, 'queued': True}), 202
    try:
        result = future.result(timeout=float(os.environ.get('FILTERS_CHECK_WAIT_SECONDS') or 120))
    except FutureTimeoutError:
        return jsonify({'ok': True, 'queued': True}), 202
    return jsonify(_update_payload(result.to_payload()))


@app.route('/api/filters/reload', methods=['POST'])
def api_reload_filters():
    get_filters_manager().updater.reload_anti_banner_filters()
    return jsonify({'ok': True, 'queued': True}), 202


@app.route('/api/filters/last-check', methods=['GET'])
def api_last_check():
    return jsonify({'lastCheck': get_filters_manager().get_filters_update_last_check()})


@app.route('/api/groups', methods=['GET'])
def api_groups():
    groups = sorted(get_filters_manager().get_groups(), key=lambda g: (g.display_number, g.group_id))
    return jsonify({'groups': [g.to_dict() for g in groups]})


@app.route('/api/groups/offer', methods=['GET'])
def api_offer_groups():
    return jsonify({'groupIds': get_filters_manager().offer_groups_and_filters()})


@app.route('/api/groups/<int:group_id>/enable', methods=['POST'])
def api_enable_group(group_id: int):
    get_filters_manager().enable_filters_group(group_id)
    return jsonify({'ok': True})


@app.route('/api/groups/<int:group_id>/disable', methods=['POST'])
def api_disable_group(group_id: int):
    get_filters_manager().disable_filters_group(group_id)
    return jsonify({'ok': True})


@app.route('/api/custom-filters', methods=['POST'])
def api_subscribe_custom_filter():
    data = _json_body()
    url = str(data.get('url') or '').strip()
    options = {'title': str(data.get('title') or '').strip(), 'trusted': _as_bool(data.get('trusted'))}
    out: Dict[str, Any] = {}

    def on_success(flt) -> None:
        out['filter'] = flt.to_dict()

    def on_error(error=None) -> None:
        out['error'] = error or 'Unable to subscribe to this filter.'

    get_filters_manager().subscribe_to_custom_filter(url, options, on_success, on_error)
    if 'filter' in out:
        return jsonify({'ok': True, 'filter': out['filter']}), 201
    return jsonify({'ok': False, 'error': out.get('error')}), 400


@app.route('/api/custom-filters/info', methods=['POST'])
def api_custom_filter_info():
    data = _json_body()
    url = str(data.get('url') or '').strip()
    options = {'title': str(data.get('title') or '').strip()}
    out: Dict[str, Any] = {}

    def on_success(info) -> None:
        out['filter'] = info.to_dict()

    def on_error(error=None) -> None:
        out['error'] = error or 'Unable to load filter info.'

    get_filters_manager().load_custom_filter_info(url, options, on_success, on_error)
    if 'filter' in out:
        return jsonify({'ok': True, 'filter': out['filter']})
    return jsonify({'ok': False, 'error': out.get('error')}), 400


@app.route('/api/settings', methods=['GET', 'POST'])
def api_settings():
    manager = get_filters_manager()
    if request.method == 'POST':
        data = _json_body()
        if 'update_period_hours' in data:
            try:
                hours = int(data.get('update_period_hours'))
            except (TypeError, ValueError):
                raise ValueError('update_period_hours must be an integer.')
            manager.settings.set_update_filters_period(hours)
            manager.updater.rerun_auto_update_timer()
        if 'locale' in data:
            manager.settings.set_locale(str(data.get('locale') or ''))
    return jsonify(manager.settings.get_settings())


@app.errorhandler(Exception)
def _internal_error(e: Exception):
    if isinstance(e, HTTPException):
        return e
    logger.exception('Unhandled API error')
    return jsonify({'ok': False, 'error': public_error_message(e)}), 500
