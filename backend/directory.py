"""
Endpoint and queue directory for the administration screens.

Both listings come from one AMI bulk command each. A failure or timeout
propagates whole: a partial list of endpoints or queues would look complete
to an administrator and is worse than none.
"""

import logging
import re
from typing import Dict, List

from ami import AMIClient
from call_state import Endpoint, Queue

log = logging.getLogger(__name__)

_RE_CHANNEL_SPLIT = re.compile(r'[,\s]+')


def _channel_ids(event: Dict[str, str]) -> List[str]:
    """Active channels on an EndpointList event (ActiveChannels, or the older Channel key)."""
    raw = event.get('activechannels') or event.get('channel') or ''
    return [c for c in _RE_CHANNEL_SPLIT.split(raw.strip()) if c]


def endpoint_from_event(event: Dict[str, str]) -> Endpoint:
    return Endpoint(
        technology='PJSIP',
        resource=event.get('objectname', ''),
        state=(event.get('devicestate') or 'unknown').lower(),
        channel_ids=_channel_ids(event),
    )


def dedupe_queues(events: List[Dict[str, str]]) -> List[Queue]:
    """One Queue per name, in the order names were first seen."""
    seen: Dict[str, Queue] = {}
    for event in events:
        name = event.get('queue', '').strip()
        if name and name not in seen:
            seen[name] = Queue(name=name)
    return list(seen.values())


async def list_endpoints(ami: AMIClient) -> List[Endpoint]:
    """All PJSIP endpoints known to Asterisk."""
    events = await ami.run_bulk_command(
        'PJSIPShowEndpoints',
        match_events=['EndpointList'],
        complete_event='EndpointListComplete',
    )
    endpoints = [endpoint_from_event(e) for e in events if e.get('objectname')]
    log.info(f"Synced {len(endpoints)} endpoints")
    return endpoints


async def list_queues(ami: AMIClient) -> List[Queue]:
    """All queues, from the QueueParams events of QueueStatus."""
    events = await ami.run_bulk_command(
        'QueueStatus',
        match_events=['QueueParams'],
        complete_event='QueueStatusComplete',
    )
    queues = dedupe_queues(events)
    log.info(f"Synced {len(queues)} queues from {len(events)} QueueParams events")
    return queues


def bind_operator(users: List[dict], resource: str, user_id: str) -> List[dict]:
    """
    Bind extension *resource* to the user *user_id*.

    Whoever held the extension before loses it; an extension belongs to at
    most one operator. Returns new user dicts, the input is left untouched.
    """
    if not any(str(u.get('id')) == str(user_id) for u in users):
        raise KeyError(f"Unknown user id: {user_id}")

    updated = []
    for user in users:
        user = dict(user)
        if user.get('extension') == resource:
            user['extension'] = None
        if str(user.get('id')) == str(user_id):
            user['extension'] = resource
        updated.append(user)
    return updated
