# %%
"""
Heart-rate timeline dashboard.

One Dash page with a pannable/zoomable graph. Every relayout (pan, zoom,
autoscale) runs a load pass for the visible window, which fetches only the
days that are not resident yet and then redraws from the merged store.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode

import dash
import pandas as pd
from dash import dcc, html
from dash.dependencies import Input, Output, State
from flask import jsonify, request

from fitdash import __version__, config
from fitdash.chart import FigureSink
from fitdash.day_keys import to_utc
from fitdash.fitbit_client import FitbitClient
from fitdash.logging_setup import configure_logging
from fitdash.series_store import SeriesStore
from fitdash.window_controller import WindowController

log = logging.getLogger(__name__)

AUTHORIZE_URL = 'https://www.fitbit.com/oauth2/authorize'


# ============================================================
# AUTH HELPERS
# ============================================================
def build_authorize_url(client_id: str = None, redirect_uri: str = None) -> str:
    """Implicit-grant authorize link; Fitbit redirects back with #access_token=..."""
    params = {
        'response_type': 'token',
        'client_id': client_id or config.CLIENT_ID,
        'redirect_uri': redirect_uri or config.REDIRECT_URL,
        'scope': ' '.join(config.AUTH_SCOPES),
        'expires_in': config.TOKEN_EXPIRES_IN,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def token_from_fragment(fragment: Optional[str]) -> Optional[str]:
    """Pull access_token out of a redirect fragment like '#access_token=abc&user_id=...'."""
    if not fragment:
        return None
    values = parse_qs(fragment.lstrip('#')).get('access_token')
    return values[0] if values else None


# ============================================================
# CHART VIEWS (one per access token)
# ============================================================
class ChartView:
    def __init__(self, access_token: str, tz=None):
        self.tz = tz or config.get_timezone()
        self.client = FitbitClient(access_token, self.tz)
        self.store = SeriesStore(self.tz)
        self.sink = FigureSink(self.tz)
        self.controller = WindowController(self.client, self.store, self.sink)

    def close(self):
        self.controller.close()


_views: Dict[str, ChartView] = {}
_views_lock = threading.Lock()


def get_view(access_token: str) -> ChartView:
    with _views_lock:
        view = _views.get(access_token)
        if view is None:
            log.info(f"🆕 New chart view for token {access_token[:6]}...")
            view = ChartView(access_token)
            _views[access_token] = view
        return view


def discard_view(access_token: str):
    with _views_lock:
        view = _views.pop(access_token, None)
    if view is not None:
        log.info(f"🗑️ Discarding chart view for token {access_token[:6]}...")
        view.close()


def parse_relayout_range(relayout_data: Optional[dict], tz) -> Optional[Tuple[datetime, datetime]]:
    """Visible x range from a plotly relayout payload, or None when it carries no range."""
    if not relayout_data:
        return None

    if 'xaxis.range[0]' in relayout_data and 'xaxis.range[1]' in relayout_data:
        raw = (relayout_data['xaxis.range[0]'], relayout_data['xaxis.range[1]'])
    elif isinstance(relayout_data.get('xaxis.range'), (list, tuple)) and len(relayout_data['xaxis.range']) >= 2:
        raw = tuple(relayout_data['xaxis.range'][:2])
    else:
        return None

    try:
        start, end = (pd.Timestamp(value) for value in raw)
    except (TypeError, ValueError):
        log.warning(f"⚠️ Could not parse relayout range {raw!r}")
        return None
    if pd.isna(start) or pd.isna(end):
        return None
    start = start.tz_localize(tz) if start.tzinfo is None else start.tz_convert(tz)
    end = end.tz_localize(tz) if end.tzinfo is None else end.tz_convert(tz)
    if end < start:
        start, end = end, start
    return start.to_pydatetime(), end.to_pydatetime()


# ============================================================
# DASH APP
# ============================================================
app = dash.Dash(__name__)
app.title = "Fitbit Heart Rate Timeline"
server = app.server

app.layout = html.Div([
    dcc.Location(id='location', refresh=False),
    dcc.Store(id='access-token', storage_type='local'),
    dcc.ConfirmDialog(id='notice-dialog'),
    html.Div([
        html.H2("Heart Rate Timeline", style={'margin': '0'}),
        html.Button("Login with Fitbit", id='login-button', n_clicks=0),
    ], style={'display': 'flex', 'justifyContent': 'space-between', 'alignItems': 'center'}),
    html.Div(id='load-status', style={'color': '#999', 'fontSize': '12px', 'margin': '6px 0'}),
    dcc.Loading(dcc.Graph(
        id='timeline',
        config={'scrollZoom': True, 'displaylogo': False},
    )),
], style={'fontFamily': 'Arial, sans-serif', 'padding': '20px'})


@app.callback(Output('location', 'href'), Input('login-button', 'n_clicks'), prevent_initial_call=True)
def authorize(n_clicks):
    return build_authorize_url()


@app.callback(Output('access-token', 'data'), Input('location', 'hash'), State('access-token', 'data'))
def capture_token(url_hash, stored_token):
    return current_token(url_hash, stored_token)


def current_token(url_hash: Optional[str], stored_token: Optional[str]) -> Optional[str]:
    """Token from a fresh redirect, else the stored one; a replaced token's view is discarded."""
    token = token_from_fragment(url_hash)
    if not token:
        return stored_token or config.FITBIT_ACCESS_TOKEN or None
    log.info("🔑 Access token captured from redirect")
    if stored_token and stored_token != token:
        discard_view(stored_token)
    return token


@app.callback(
    Output('timeline', 'figure'),
    Output('notice-dialog', 'displayed'),
    Output('notice-dialog', 'message'),
    Output('load-status', 'children'),
    Input('access-token', 'data'),
    Input('timeline', 'relayoutData'),
)
def update_timeline(access_token, relayout_data):
    if not access_token:
        return dash.no_update, True, "Please log in through Fitbit to continue.", "Not logged in"

    view = get_view(access_token)
    visible = parse_relayout_range(relayout_data, view.tz)
    if visible is None:
        if relayout_data and view.sink.figure is not None and 'xaxis.autorange' not in relayout_data:
            # Non-range relayouts (dragmode, hover toggles) keep the current window
            return dash.no_update, False, dash.no_update, dash.no_update
        visible = view.controller.default_window()

    result = view.controller.load_range(*visible)
    notice = view.sink.pop_notice()
    status = (f"{len(result.days)} day(s) in view · {view.store.sample_count()} samples resident"
              f" · {len(result.failed_heart_rate) + len(result.failed_overlay)} failed this pass")
    return view.sink.figure, notice is not None, notice or dash.no_update, status


# ============================================================
# JSON API
# ============================================================
def _request_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):].strip()
    return config.FITBIT_ACCESS_TOKEN or None


@server.route('/api/health', methods=['GET'])
def api_health():
    with _views_lock:
        view_count = len(_views)
    return jsonify({'status': 'ok', 'version': __version__, 'views': view_count})


@server.route('/api/series', methods=['GET'])
def api_series():
    """Resident samples and overlays for ?start=...&end=... (ISO timestamps, local time if naive)."""
    token = _request_token()
    if not token:
        return jsonify({'success': False, 'error': 'No access token'}), 401

    start_arg, end_arg = request.args.get('start'), request.args.get('end')
    if not start_arg or not end_arg:
        return jsonify({'success': False, 'error': 'start and end are required ISO timestamps'}), 400

    view = get_view(token)
    visible = parse_relayout_range({'xaxis.range': [start_arg, end_arg]}, view.tz)
    if visible is None:
        return jsonify({'success': False, 'error': f'Could not parse range {start_arg}..{end_arg}'}), 400

    start, end = visible
    if request.args.get('load', '').lower() in ('1', 'true', 'yes'):
        view.controller.load_range(start, end)

    snapshot = view.store.snapshot(start, end)
    df = view.store.to_frame(start, end)
    return jsonify({
        'success': True,
        'start': to_utc(start, view.tz).isoformat(),
        'end': to_utc(end, view.tz).isoformat(),
        'samples': [{'time': t.isoformat(), 'bpm': int(bpm)} for t, bpm in zip(df['time'], df['bpm'])],
        'sleep_phases': [{'start': p.start.isoformat(), 'end': p.end.isoformat(), 'stage': p.stage.value}
                         for p in snapshot.sleep_phases],
        'workouts': [{'start': w.start.isoformat(), 'end': w.end.isoformat(),
                      'activity_name': w.activity_name, 'calories': w.calories}
                     for w in snapshot.workouts],
        'resting_hr_by_day': snapshot.resting_hr_by_day,
        'summaries_by_day': {day: {'resting_hr': s.resting_hr, 'calories': s.calories}
                             for day, s in snapshot.summaries_by_day.items()},
        'hrv_by_day': {day: {'daily_rmssd': h.daily_rmssd, 'deep_rmssd': h.deep_rmssd}
                       for day, h in snapshot.hrv_by_day.items()},
    })


def main():
    configure_logging()
    if not config.CLIENT_ID and not config.FITBIT_ACCESS_TOKEN:
        log.error("Missing CLIENT_ID (for login) and FITBIT_ACCESS_TOKEN, please set one of them")
        raise SystemExit(1)
    log.info(f"🚀 Starting fitdash {__version__} on port {config.PORT} (timezone {config.TIMEZONE_NAME})")
    app.run(host='0.0.0.0', port=config.PORT, debug=False)


if __name__ == '__main__':
    main()
