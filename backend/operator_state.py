#!/usr/bin/env python3
"""
Operator call-state resolution

Given an operator's extension, walk ARI from endpoint to channel, bridge,
peer channel and channel variables, and reduce what comes back to a single
OperatorCallState.

Only the endpoint lookup may fail the whole resolution. Every later lookup
goes through _degrade(): a failure there is logged and leaves one field
unset, so the dashboard always gets a best-effort answer.

Known limitations:
    - When an endpoint lists several channels (call waiting) the channel
      policy decides which one is the operator's leg. The default keeps the
      first one, which is what Asterisk lists as the newest leg; there is no
      further tie-break.
    - The peer is the first bridge member that is not the operator's own
      channel. Conference bridges (3+ members) are not resolved beyond that.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union

from call_state import Channel, Endpoint, EndpointState, OperatorCallState, normalize_state
from telephony_errors import AsteriskError, ProtocolError

log = logging.getLogger(__name__)

__all__ = [
    'OperatorStateResolver',
    'first_channel',
    'find_peer_channel',
    'VAR_CDR_UNIQUEID',
    'VAR_CDR_LINKEDID',
    'VAR_CONNECTED_NUM',
]

VAR_CDR_UNIQUEID  = 'CDR(uniqueid)'
VAR_CDR_LINKEDID  = 'CDR(linkedid)'
VAR_CONNECTED_NUM = 'CONNECTEDLINE(num)'

T = TypeVar('T')

ChannelPolicy = Callable[[Endpoint], Optional[str]]


def first_channel(endpoint: Endpoint) -> Optional[str]:
    """Default channel policy: the first channel id the endpoint lists."""
    return endpoint.channel_ids[0] if endpoint.channel_ids else None


def find_peer_channel(members: Iterable[str], own_channel_id: str) -> Optional[str]:
    """First bridge member that is not *own_channel_id*."""
    for member in members:
        if member and member != own_channel_id:
            return member
    return None


class OperatorStateResolver:
    """
    Resolve what an operator is doing right now.

    *ari* is anything with the AriClient lookup coroutines (get_endpoint,
    get_channel, get_bridge, get_channel_variable). No state is kept between
    calls, so one resolver can serve concurrent polls for many operators.
    """

    def __init__(self, ari, technology: str = 'PJSIP',
                 channel_policy: ChannelPolicy = first_channel,
                 queue_mappings: Optional[Dict[str, str]] = None):
        self.ari = ari
        self.technology = technology
        self.channel_policy = channel_policy
        self.queue_mappings = dict(queue_mappings or {})

    async def _degrade(self, what: str, fetch: Callable[..., Awaitable[T]], *args) -> Optional[T]:
        """Run one lookup; any transport failure becomes None."""
        try:
            return await fetch(*args)
        except ProtocolError as e:
            if e.status_code == 404:
                # channel or bridge went away between polls
                log.debug("%s: gone (%s)", what, e)
            else:
                log.warning("%s failed: %s", what, e)
        except AsteriskError as e:
            log.warning("%s failed: %s", what, e)
        return None

    def _queue_name(self, context: str) -> Optional[str]:
        if not context:
            return None
        return self.queue_mappings.get(context, context)

    async def resolve(self, extension: str) -> OperatorCallState:
        """
        Build the OperatorCallState for *extension*.

        Raises UnreachableError / AuthError / ProtocolError only when the
        endpoint itself cannot be looked up.
        """
        endpoint = await self.ari.get_endpoint(extension, self.technology)
        if endpoint is None:
            return OperatorCallState(extension=extension, endpoint_state=EndpointState.OFFLINE.value)

        endpoint_state = normalize_state(endpoint.state)
        channel_id = self.channel_policy(endpoint)
        if not channel_id:
            return OperatorCallState(extension=extension, endpoint_state=endpoint_state)

        channel = await self._degrade(f"channel {channel_id}", self.ari.get_channel, channel_id)
        if channel is None:
            return OperatorCallState(extension=extension, endpoint_state=endpoint_state)

        peer_id, caller_id, unique_id = await self._resolve_peer(channel)

        if not caller_id:
            caller_id = await self._degrade(
                f"{VAR_CONNECTED_NUM} on {channel.id}",
                self.ari.get_channel_variable, channel.id, VAR_CONNECTED_NUM,
            )

        if not caller_id and channel.creator:
            creator = await self._degrade(f"creator channel {channel.creator}",
                                          self.ari.get_channel, channel.creator)
            if creator is not None:
                caller_id = creator.caller.number or None

        linked_id = None
        if not unique_id:
            linked_id = await self._degrade(
                f"{VAR_CDR_LINKEDID} on {channel.id}",
                self.ari.get_channel_variable, channel.id, VAR_CDR_LINKEDID,
            )
            unique_id = linked_id
        if not unique_id:
            unique_id = await self._degrade(
                f"{VAR_CDR_UNIQUEID} on {channel.id}",
                self.ari.get_channel_variable, channel.id, VAR_CDR_UNIQUEID,
            )

        return OperatorCallState(
            extension=extension,
            endpoint_state=normalize_state(channel.state) if channel.state else endpoint_state,
            channel_id=channel.id,
            channel_name=channel.name or None,
            channel_state=channel.state or None,
            peer_channel_id=peer_id,
            caller_id=caller_id or None,
            queue=self._queue_name(channel.dialplan.context),
            unique_id=unique_id or None,
            linked_id=linked_id or None,
        )

    async def _resolve_peer(self, channel: Channel):
        """(peer channel id, peer caller number, peer CDR uniqueid) for a bridged channel."""
        if not channel.bridge_id:
            return None, None, None

        bridge = await self._degrade(f"bridge {channel.bridge_id}", self.ari.get_bridge, channel.bridge_id)
        if bridge is None:
            return None, None, None

        peer_id = find_peer_channel(bridge.channels, channel.id)
        if peer_id is None:
            return None, None, None
        if len(bridge.channels) > 2:
            log.debug("bridge %s has %d members, using %s as peer of %s",
                      bridge.id, len(bridge.channels), peer_id, channel.id)

        unique_id = await self._degrade(
            f"{VAR_CDR_UNIQUEID} on peer {peer_id}",
            self.ari.get_channel_variable, peer_id, VAR_CDR_UNIQUEID,
        )
        peer = await self._degrade(f"peer channel {peer_id}", self.ari.get_channel, peer_id)
        caller_id = peer.caller.number if peer is not None else None
        return peer_id, caller_id or None, unique_id

    async def resolve_many(self, extensions: Iterable[str]) -> Dict[str, Union[OperatorCallState, AsteriskError]]:
        """Resolve several operators concurrently; a failure stays with its own extension."""
        extensions: List[str] = list(dict.fromkeys(extensions))
        results = await asyncio.gather(*(self.resolve(ext) for ext in extensions), return_exceptions=True)
        out: Dict[str, Union[OperatorCallState, AsteriskError]] = {}
        for ext, result in zip(extensions, results):
            if isinstance(result, AsteriskError):
                log.warning("Operator %s state unavailable: %s", ext, result)
            elif isinstance(result, BaseException):
                raise result
            out[ext] = result
        return out
