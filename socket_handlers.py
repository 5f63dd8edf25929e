#!/usr/bin/env python3
"""
socket_handlers.py

Socket.IO wiring for the CRTalk server: connects the realtime hub to the
Flask-SocketIO server and registers the handler modules under realtime/.
"""

import logging

from realtime import groups
from realtime.hub import RealtimeHub


def register_socketio_handlers(socketio, settings, hub: RealtimeHub):
    """
    Registers all Socket.IO event handlers and gives the hub its emitter.
    """
    hub.set_emitter(socketio.emit)
    groups.register(socketio, settings, hub)
    logging.debug("[socketio] handlers registered (async_mode=%s)", socketio.async_mode)
