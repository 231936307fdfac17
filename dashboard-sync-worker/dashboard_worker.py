#!/usr/bin/env python3
"""
Dashboard Sync Worker - Entry Point

ARCHITECTURE:
1. Status server (HTTP on PORT) - health, status and dashboard actions as JSON
2. Session creation from environment credentials
3. Conversation polling every POLL_INTERVAL seconds
4. Graceful shutdown on SIGTERM / SIGINT (timer stopped, session closed)

USAGE:
    python dashboard_worker.py                 # Serve and poll until stopped
    python dashboard_worker.py --once          # One sync cycle, print status, exit
    python dashboard_worker.py --show-empty    # Keep conversations without messages
    python dashboard_worker.py --port 9000
"""

import sys
import json
import asyncio
import signal
import argparse
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from aiohttp import web

from dashboard_config import PORT, POLL_INTERVAL, HIDE_EMPTY_CONVERSATIONS, MAX_ERRORS, API_BASE_URL
from dashboard import Dashboard
from session_manager import SessionContext, SessionError
from sync_logger import log

STATE_KEY = web.AppKey('worker_state', dict)


def new_worker_state(dashboard: Optional[Dashboard] = None) -> Dict[str, Any]:
    return {
        'status': 'running' if dashboard is not None else 'starting',
        'started_at': datetime.now(timezone.utc),
        'dashboard': dashboard,
        'errors': [],
    }


def record_error(state: Dict[str, Any], error: str):
    state['errors'].append({
        'error': error,
        'timestamp': datetime.now(timezone.utc).isoformat()
    })
    # Keep only last MAX_ERRORS errors
    state['errors'] = state['errors'][-MAX_ERRORS:]


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.Response(
        status=status,
        text=json.dumps(data, indent=2, default=str),
        content_type='application/json'
    )


def _dashboard(request) -> Optional[Dashboard]:
    return request.app[STATE_KEY].get('dashboard')


def _not_ready() -> web.Response:
    return json_response({'error': 'Dashboard not ready'}, status=503)


def _notices(dashboard: Dashboard):
    return [n.to_dict() for n in dashboard.notices.active()]


# =============================================================================
# HEALTH AND STATUS
# =============================================================================

async def health_handler(request):
    """
    Health check endpoint.

    Returns 200 while starting or while polling cycles keep running.
    Returns 503 if the worker failed or the last cycle is stale.
    """
    state = request.app[STATE_KEY]
    dashboard = state.get('dashboard')

    if state['status'] == 'starting':
        return json_response({'status': 'starting', 'message': 'Worker is initializing...'})

    if state['status'] != 'running' or dashboard is None:
        return json_response({
            'status': 'unhealthy',
            'worker_status': state['status'],
            'errors': state['errors'][-5:],
        }, status=503)

    stats = dashboard.engine.stats
    if stats.last_cycle_at:
        cycle_age = (datetime.now(timezone.utc) - stats.last_cycle_at).total_seconds()
        if cycle_age > max(300, 10 * dashboard.engine.poll_interval):
            return json_response({
                'status': 'unhealthy',
                'reason': f'Last sync cycle stale ({cycle_age:.0f}s old)',
            }, status=503)

    return json_response({
        'status': 'healthy',
        'uptime': (datetime.now(timezone.utc) - state['started_at']).total_seconds(),
        'conversations': len(dashboard.engine.collection),
        'cycles_run': stats.cycles_run,
    })


async def status_handler(request):
    """Detailed status endpoint."""
    state = request.app[STATE_KEY]
    dashboard = state.get('dashboard')

    return json_response({
        'worker': {
            'status': state['status'],
            'started_at': state['started_at'].isoformat() if state['started_at'] else None,
            'errors': state['errors'][-10:],
        },
        'dashboard': dashboard.snapshot() if dashboard is not None else None,
        'environment': {
            'API_BASE_URL': API_BASE_URL,
            'POLL_INTERVAL': POLL_INTERVAL,
        },
    })


# =============================================================================
# CONVERSATIONS
# =============================================================================

async def conversations_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    return json_response({
        'conversations': [c.to_dict() for c in dashboard.engine.conversations()],
        'version': dashboard.engine.version,
        'has_more': dashboard.engine.has_more_conversations,
        'footer': dashboard.engine.list_footer(),
    })


async def conversation_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    conversation = dashboard.engine.get(request.match_info['conversation_id'])
    if conversation is None:
        return json_response({'error': 'Conversation not found'}, status=404)
    return json_response(conversation.to_dict(include_messages=True))


async def open_conversation_handler(request):
    """Select a conversation: initial message load, participants, message polling."""
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    view = await dashboard.select_conversation(request.match_info['conversation_id'])
    if view is None:
        return json_response({'error': 'Conversation not found', 'notices': _notices(dashboard)}, status=404)
    return json_response(_view_dict(view, dashboard))


async def older_messages_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    view = await dashboard.select_conversation(request.match_info['conversation_id'])
    if view is None:
        return json_response({'error': 'Conversation not found', 'notices': _notices(dashboard)}, status=404)
    added = await view.load_older()
    return json_response(dict(_view_dict(view, dashboard), added=added))


async def reply_handler(request):
    """Send a text reply in a conversation as the bot."""
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    body = await _json_body(request)
    text = str(body.get('text') or '')
    if not text.strip():
        return json_response({'error': 'Missing text'}, status=400)

    view = await dashboard.select_conversation(request.match_info['conversation_id'])
    if view is None:
        return json_response({'error': 'Conversation not found', 'notices': _notices(dashboard)}, status=404)
    message = await view.send_text(text)
    return json_response({
        'message': message.to_dict() if message else None,
        'notices': _notices(dashboard),
    }, status=200 if message else 502)


async def delete_conversation_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    deleted = await dashboard.delete_conversation(request.match_info['conversation_id'])
    return json_response({'deleted': deleted, 'notices': _notices(dashboard)}, status=200 if deleted else 502)


async def load_more_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    appended = await dashboard.load_more_conversations()
    return json_response({
        'appended': appended,
        'has_more': dashboard.engine.has_more_conversations,
        'footer': dashboard.engine.list_footer(),
        'notices': _notices(dashboard),
    })


async def refresh_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    changed = await dashboard.refresh()
    return json_response({'changed': changed, 'sync': dashboard.engine.stats.to_dict(dashboard.engine.state)})


async def custom_message_handler(request):
    """Send a text message to any conversation as any user."""
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    body = await _json_body(request)
    message = await dashboard.send_custom_message(
        str(body.get('conversation_id') or ''),
        str(body.get('user_id') or ''),
        str(body.get('text') or ''),
    )
    return json_response({
        'message': message.to_dict() if message else None,
        'notices': _notices(dashboard),
    }, status=200 if message else 400)


# =============================================================================
# CONTACTS AND NOTICES
# =============================================================================

async def contacts_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    search = request.query.get('search', '')
    return json_response({'contacts': [c.to_dict() for c in dashboard.contacts(search)]})


async def notices_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    return json_response({'notices': _notices(dashboard)})


async def dismiss_notice_handler(request):
    dashboard = _dashboard(request)
    if dashboard is None:
        return _not_ready()
    try:
        notice_id = int(request.match_info['notice_id'])
    except ValueError:
        return json_response({'error': 'Invalid notice id'}, status=400)
    if not dashboard.notices.dismiss(notice_id):
        return json_response({'error': 'Notice not found'}, status=404)
    return json_response({'dismissed': notice_id})


def _view_dict(view, dashboard: Dashboard) -> Dict[str, Any]:
    return {
        'conversation': view.conversation.to_dict(include_messages=True),
        'display_name': view.display_name(),
        'header': view.list_header(),
        'has_more_messages': view.has_more_messages,
        'load_error': view.load_error,
        'participants': {user_id: c.to_dict() for user_id, c in view.participants.items()},
        'notices': _notices(dashboard),
    }


async def _json_body(request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return {}
    return body if isinstance(body, dict) else {}


def build_app(state: Dict[str, Any]) -> web.Application:
    app = web.Application()
    app[STATE_KEY] = state
    app.router.add_get('/', health_handler)  # Default route
    app.router.add_get('/health', health_handler)
    app.router.add_get('/status', status_handler)
    app.router.add_post('/refresh', refresh_handler)
    app.router.add_get('/conversations', conversations_handler)
    app.router.add_post('/conversations/load-more', load_more_handler)
    app.router.add_get('/conversations/{conversation_id}', conversation_handler)
    app.router.add_delete('/conversations/{conversation_id}', delete_conversation_handler)
    app.router.add_post('/conversations/{conversation_id}/open', open_conversation_handler)
    app.router.add_post('/conversations/{conversation_id}/older', older_messages_handler)
    app.router.add_post('/conversations/{conversation_id}/messages', reply_handler)
    app.router.add_post('/messages', custom_message_handler)
    app.router.add_get('/contacts', contacts_handler)
    app.router.add_get('/notices', notices_handler)
    app.router.add_delete('/notices/{notice_id}', dismiss_notice_handler)
    return app


async def start_status_server(state: Dict[str, Any], port: int) -> web.AppRunner:
    runner = web.AppRunner(build_app(state))
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    log.info(f"Status server started on port {port}")
    return runner


# =============================================================================
# MAIN
# =============================================================================

async def run_once(hide_empty: bool) -> int:
    """One sync cycle, status printed as JSON."""
    try:
        session = await SessionContext.from_env()
    except SessionError as e:
        log.error(f"FATAL: {e}")
        return 1

    dashboard = Dashboard(session, hide_empty=hide_empty)
    try:
        await dashboard.start(poll=False)
        print(json.dumps(dashboard.snapshot(), indent=2, default=str))
        failed = dashboard.engine.stats.cycles_failed > 0
    finally:
        await dashboard.logout()
    return 1 if failed else 0


async def main(args) -> int:
    log.info("=" * 60)
    log.info("  DASHBOARD SYNC WORKER")
    log.info("=" * 60)

    if args.once:
        return await run_once(hide_empty=not args.show_empty)

    state = new_worker_state()
    stop_event = asyncio.Event()

    def signal_handler(signum):
        log.info(f"Received signal {signum}, initiating graceful shutdown...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, signal_handler, signum)

    # Status server first, so health checks answer while the session starts
    runner = await start_status_server(state, args.port)

    try:
        session = await SessionContext.from_env()
    except SessionError as e:
        log.error(f"FATAL: {e}")
        state['status'] = 'error'
        record_error(state, str(e))
        # Keep the status server running so the failure can be diagnosed
        await stop_event.wait()
        await runner.cleanup()
        return 1

    dashboard = Dashboard(session, hide_empty=not args.show_empty)
    state['dashboard'] = dashboard
    await dashboard.start()
    state['status'] = 'running'
    state['started_at'] = datetime.now(timezone.utc)
    log.success(f"Polling conversations every {dashboard.engine.poll_interval}s")

    await stop_event.wait()

    log.info("Starting graceful shutdown...")
    state['status'] = 'stopping'
    await dashboard.logout()
    await runner.cleanup()
    log.info("Shutdown complete")
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='WhatsApp dashboard sync worker')
    parser.add_argument('--once', action='store_true', help='Run one sync cycle, print status and exit')
    parser.add_argument('--show-empty', action='store_true', default=not HIDE_EMPTY_CONVERSATIONS,
                        help='Keep conversations that have no messages')
    parser.add_argument('--port', type=int, default=PORT, help='Status server port')
    return parser.parse_args(argv)


def run():
    sys.exit(asyncio.run(main(parse_args())))


if __name__ == '__main__':
    run()
