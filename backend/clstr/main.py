from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clstr.api import connections, messages, ops
from clstr.api.errors import install_error_handlers
from clstr.domain.connections.sockets import ConnectionsNamespace, set_namespace as set_connections_namespace
from clstr.domain.messaging import service as messaging_service
from clstr.domain.messaging.sockets import MessagesNamespace
from clstr.infra import postgres
from clstr.obs import init as obs_init
from clstr.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	if postgres.is_configured():
		await postgres.init_pool()
	try:
		yield
	finally:
		await messaging_service.get_service().reset_realtime()
		await postgres.close_pool()


app = FastAPI(title="clstr messaging", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins or [])
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
connections_namespace = ConnectionsNamespace()
sio.register_namespace(connections_namespace)
set_connections_namespace(connections_namespace)
sio.register_namespace(MessagesNamespace())
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(connections.router)
app.include_router(messages.router)
app.include_router(ops.router)
