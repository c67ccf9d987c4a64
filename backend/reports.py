"""
KPI reducers over historical call records.

Rows come from the CDR table (fetched elsewhere) as plain dicts with the
usual Asterisk column names: calldate, src, dst, dcontext, channel,
dstchannel, lastapp, duration, billsec, disposition, uniqueid, linkedid,
userfield, recordingfile.
"""

import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from call_state import Call, Queue

SLA_TARGET_SECONDS = 30
NO_QUEUE = 'No queue'

_RE_OPERATOR_EXT = re.compile(r'(?:PJSIP|SIP)/(\d+)')
_RE_VOTE = re.compile(r'Vote:\s*(\d+)')
_RE_EXT = re.compile(r'^[1-9]\d{1,4}$')
_RE_PSTN = re.compile(r'^\+?\d{7,15}$')


class Kpis(BaseModel):
    total_calls: int = 0
    answered_calls: int = 0
    missed_calls: int = 0
    service_level: float = 0.0
    average_speed_of_answer: float = 0.0
    average_handle_time: float = 0.0
    abandonment_rate: float = 0.0


class Trend(BaseModel):
    value: str
    direction: str


class QueueReportRow(BaseModel):
    queue_name: str
    total_calls: int
    answered_calls: int
    missed_calls: int
    abandonment_rate: float
    sla: float
    avg_wait_time: float
    avg_handle_time: float


class OperatorPerformance(BaseModel):
    operator: str
    answered: int
    avg_handle_time: float


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------
def classify_direction(cdr: dict) -> str:
    """
    Classify call direction (IN/OUT/INTERNAL) using weighted voting.
    """
    src = str(cdr.get("src") or "").strip()
    dst = str(cdr.get("dst") or "").strip()
    dcontext = str(cdr.get("dcontext") or "").lower()
    channel = str(cdr.get("channel") or "").lower()
    dstchannel = str(cdr.get("dstchannel") or "").lower()
    lastapp = str(cdr.get("lastapp") or "").lower()

    votes = {"IN": 0, "OUT": 0, "INTERNAL": 0}

    src_ext, dst_ext = bool(_RE_EXT.match(src)), bool(_RE_EXT.match(dst))
    src_pstn, dst_pstn = bool(_RE_PSTN.match(src)), bool(_RE_PSTN.match(dst))

    # Context (weight 4 / 2)
    if any(k in dcontext for k in ("from-trunk", "from-pstn", "incoming", "ext-did", "ivr", "queue")):
        votes["IN"] += 4
    if any(k in dcontext for k in ("from-internal", "outbound", "dialout")):
        votes["OUT"] += 2

    # Number shapes (weight 3-5)
    if src_ext and dst_pstn:
        votes["OUT"] += 3
    elif src_pstn and dst_ext:
        votes["IN"] += 3
    elif src_ext and dst_ext:
        votes["INTERNAL"] += 5

    # Trunk channels (weight 2)
    trunk_indicators = ("trunk", "gw", "provider", "peer", "dahdi")
    if any(x in channel for x in trunk_indicators):
        votes["IN"] += 2
    if any(x in dstchannel for x in trunk_indicators):
        votes["OUT"] += 2

    # Last application
    if lastapp in ("queue", "ivr", "stasis"):
        votes["IN"] += 2
    elif lastapp in ("page", "chanspy", "echo"):
        votes["INTERNAL"] += 3
    elif lastapp == "background" and src_ext:
        votes["INTERNAL"] += 3

    max_votes = max(votes.values())
    if max_votes == 0:
        return "INTERNAL" if src_ext else "UNKNOWN"
    if votes["IN"] == votes["OUT"] == max_votes:
        return "IN" if src_pstn else "OUT"
    return max(votes, key=votes.get)


def operator_extension(dstchannel: Optional[str]) -> Optional[str]:
    """Extension of the answering operator, e.g. 'PJSIP/1001-0000002a' -> '1001'."""
    if not dstchannel:
        return None
    m = _RE_OPERATOR_EXT.search(dstchannel)
    return m.group(1) if m else None


def _as_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def call_from_cdr(row: dict) -> Call:
    """Map one CDR row to a Call."""
    duration = _as_int(row.get('duration'))
    billsec = _as_int(row.get('billsec'))

    satisfaction = None
    if row.get('userfield'):
        m = _RE_VOTE.search(str(row['userfield']))
        if m:
            satisfaction = m.group(1)

    calldate = row.get('calldate')
    if isinstance(calldate, datetime):
        calldate = calldate.isoformat()

    return Call(
        id=str(row.get('uniqueid') or ''),
        linked_id=row.get('linkedid') or None,
        caller_number=str(row.get('src') or ''),
        called_number=str(row.get('dst') or ''),
        operator_extension=operator_extension(row.get('dstchannel')),
        queue=row.get('dcontext') or None,
        status=str(row.get('disposition') or '').upper(),
        start_time=calldate,
        duration=duration,
        billsec=billsec,
        wait_time=max(duration - billsec, 0),
        is_outgoing=row.get('dcontext') == 'from-internal',
        direction=classify_direction(row),
        satisfaction=satisfaction,
        recording_file=row.get('recordingfile') or None,
    )


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------
def calculate_kpis(calls: Iterable[Call], sla_target: int = SLA_TARGET_SECONDS) -> Kpis:
    calls = list(calls)
    answered = [c for c in calls if c.answered]
    missed = [c for c in calls if not c.answered]
    total = len(calls)

    if not answered:
        return Kpis(
            total_calls=total,
            missed_calls=len(missed),
            abandonment_rate=(len(missed) / total * 100) if total else 0.0,
        )

    within_sla = sum(1 for c in answered if c.wait_time <= sla_target)
    return Kpis(
        total_calls=total,
        answered_calls=len(answered),
        missed_calls=len(missed),
        service_level=within_sla / len(answered) * 100,
        average_speed_of_answer=sum(c.wait_time for c in answered) / len(answered),
        average_handle_time=sum(c.billsec for c in answered) / len(answered),
        abandonment_rate=len(missed) / total * 100,
    )


def calculate_trend(current: float, previous: float) -> Trend:
    """Percentage change against the previous period, with a ±0.1% neutral band."""
    if previous == 0:
        if current > 0:
            return Trend(value='+100.0%', direction='up')
        return Trend(value='0.0%', direction='neutral')

    change = (current - previous) / previous * 100
    direction = 'neutral'
    if change > 0.1:
        direction = 'up'
    elif change < -0.1:
        direction = 'down'
    return Trend(value=f"{'+' if change >= 0 else ''}{change:.1f}%", direction=direction)


def operator_performance(calls: Iterable[Call], names: Optional[Dict[str, str]] = None) -> List[OperatorPerformance]:
    """Answered calls and average talk time per operator, busiest first."""
    names = names or {}
    totals: Dict[str, List[int]] = {}
    for call in calls:
        if not call.answered or not call.operator_extension:
            continue
        name = names.get(call.operator_extension) or f"Ext. {call.operator_extension}"
        answered, talk = totals.get(name, [0, 0])
        totals[name] = [answered + 1, talk + call.billsec]

    rows = [
        OperatorPerformance(operator=name, answered=answered, avg_handle_time=talk / answered)
        for name, (answered, talk) in totals.items()
    ]
    return sorted(rows, key=lambda r: r.answered, reverse=True)


def queue_distribution(calls: Iterable[Call]) -> List[Dict[str, object]]:
    """Call count per queue, largest first."""
    counts: Dict[str, int] = {}
    for call in calls:
        name = call.queue or NO_QUEUE
        counts[name] = counts.get(name, 0) + 1
    return [{'name': k, 'value': v} for k, v in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)]


def queue_report(queues: Iterable[Queue], calls: Iterable[Call],
                 sla_target: int = SLA_TARGET_SECONDS) -> List[QueueReportRow]:
    """Per-queue KPIs, most active queue first."""
    calls = list(calls)
    rows = []
    for queue in queues:
        kpis = calculate_kpis([c for c in calls if c.queue == queue.name], sla_target)
        rows.append(QueueReportRow(
            queue_name=queue.name,
            total_calls=kpis.total_calls,
            answered_calls=kpis.answered_calls,
            missed_calls=kpis.missed_calls,
            abandonment_rate=kpis.abandonment_rate,
            sla=kpis.service_level,
            avg_wait_time=kpis.average_speed_of_answer,
            avg_handle_time=kpis.average_handle_time,
        ))
    return sorted(rows, key=lambda r: r.total_calls, reverse=True)


def find_call(calls: Iterable[Call], call_id: str) -> Optional[Call]:
    """
    Find the record for a live call id (uniqueid or linkedid).

    Exact match first; otherwise any record whose id shares the part before
    the last dot, e.g. '1699000000.5' also matches '1699000000.7'.
    *calls* are expected newest first, so the fallback picks the latest leg.
    """
    if not call_id:
        return None
    calls = list(calls)
    for call in calls:
        if call_id in (call.id, call.linked_id):
            return call

    base = call_id.rsplit('.', 1)[0] if '.' in call_id else call_id
    prefix = f"{base}."
    for call in calls:
        if call.id.startswith(prefix) or (call.linked_id or '').startswith(prefix):
            return call
    return None


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS, or MM:SS if less than an hour."""
    total_seconds = int(seconds)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    secs = total_seconds % 60

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"
