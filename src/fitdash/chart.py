"""
Plotly rendering of a ChartSnapshot.

The heart-rate line is the only trace; sleep phases and workouts are shaded
vertical bands, resting heart rate is a dotted segment across each day and the
daily summary / HRV numbers are annotations at the top of each day.
"""

import logging
import threading
from datetime import timedelta
from typing import Optional

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from fitdash.day_keys import day_bounds
from fitdash.models import ChartSnapshot, SleepStage

log = logging.getLogger(__name__)

SLEEP_STAGE_COLORS = {
    SleepStage.DEEP: 'rgba(63, 81, 181, 0.25)',
    SleepStage.LIGHT: 'rgba(121, 134, 203, 0.18)',
    SleepStage.REM: 'rgba(0, 188, 212, 0.20)',
    SleepStage.WAKE: 'rgba(255, 193, 7, 0.18)',
}
WORKOUT_COLOR = 'rgba(244, 67, 54, 0.15)'
RESTING_HR_COLOR = '#2e7d32'
HEART_RATE_COLOR = '#e74c3c'


def samples_frame(snapshot: ChartSnapshot, tz) -> pd.DataFrame:
    df = pd.DataFrame({
        'time': [sample.timestamp for sample in snapshot.samples],
        'bpm': [sample.bpm for sample in snapshot.samples],
    })
    df['time'] = pd.to_datetime(df['time'], utc=True).dt.tz_convert(tz)
    return df


def _day_label(day: str, snapshot: ChartSnapshot) -> Optional[str]:
    parts = []
    summary = snapshot.summaries_by_day.get(day)
    if summary is not None and summary.calories is not None:
        parts.append(f"{summary.calories:,.0f} kcal")
    hrv = snapshot.hrv_by_day.get(day)
    if hrv is not None and hrv.daily_rmssd is not None:
        parts.append(f"HRV {hrv.daily_rmssd:.0f} ms")
    return " · ".join(parts) or None


def build_figure(snapshot: ChartSnapshot, tz) -> go.Figure:
    """Full figure for one snapshot; the x-axis range is the snapshot's window."""
    df = samples_frame(snapshot, tz)
    fig = px.line(df, x='time', y='bpm')
    fig.update_traces(
        line=dict(color=HEART_RATE_COLOR, width=1.5),
        name='Heart Rate',
        hovertemplate='<b>%{x|%b %d %H:%M}</b><br>%{y} bpm<extra></extra>'
    )

    for phase in snapshot.sleep_phases:
        fig.add_vrect(
            x0=phase.start.astimezone(tz), x1=phase.end.astimezone(tz),
            fillcolor=SLEEP_STAGE_COLORS.get(phase.stage, 'rgba(200, 200, 200, 0.1)'),
            layer="below", line_width=0
        )

    for workout in snapshot.workouts:
        end = workout.end if workout.end > workout.start else workout.start + timedelta(minutes=1)
        fig.add_vrect(
            x0=workout.start.astimezone(tz), x1=end.astimezone(tz),
            fillcolor=WORKOUT_COLOR, layer="below", line_width=0,
            annotation_text=workout.activity_name, annotation_position="top left",
            annotation=dict(font_size=10, font_color="#666")
        )

    days = sorted(set(snapshot.resting_hr_by_day) | set(snapshot.summaries_by_day) | set(snapshot.hrv_by_day))
    for day in days:
        day_start, day_end = day_bounds(day, tz)
        resting_hr = snapshot.resting_hr_by_day.get(day)
        if resting_hr is not None:
            fig.add_shape(
                type="line", x0=day_start, x1=day_end, y0=resting_hr, y1=resting_hr,
                line=dict(color=RESTING_HR_COLOR, width=1, dash="dot"), layer="below"
            )
        label = _day_label(day, snapshot)
        if label:
            fig.add_annotation(
                x=day_start + (day_end - day_start) / 2, y=1.0, yref="paper",
                text=label, showarrow=False, font=dict(size=10, color="#666"), yanchor="bottom"
            )

    fig.update_layout(
        xaxis=dict(
            title="Time",
            range=[snapshot.start.astimezone(tz), snapshot.end.astimezone(tz)],
            gridcolor='#f0f0f0', showgrid=True
        ),
        yaxis=dict(title="Heart Rate (bpm)", range=[40, 200], gridcolor='#f0f0f0', showgrid=True),
        height=500,
        margin=dict(l=60, r=30, t=40, b=50),
        plot_bgcolor='white',
        paper_bgcolor='white',
        hovermode='closest',
        showlegend=False,
        dragmode='pan',
        uirevision='timeline'
    )
    return fig


class FigureSink:
    """Keeps the latest figure and any pending user notice for the Dash callbacks to pick up."""

    def __init__(self, tz):
        self.tz = tz
        self._lock = threading.Lock()
        self.figure: Optional[go.Figure] = None
        self.snapshot: Optional[ChartSnapshot] = None
        self._notice: Optional[str] = None

    def redraw(self, snapshot: ChartSnapshot):
        figure = build_figure(snapshot, self.tz)
        with self._lock:
            self.snapshot = snapshot
            self.figure = figure
        log.debug(f"Redraw: {len(snapshot.samples)} samples, {len(snapshot.sleep_phases)} sleep phases, "
                  f"{len(snapshot.workouts)} workouts")

    def notify(self, message: str):
        with self._lock:
            self._notice = message

    def pop_notice(self) -> Optional[str]:
        with self._lock:
            notice, self._notice = self._notice, None
            return notice
