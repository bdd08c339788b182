#!/usr/bin/env python3
"""OpenAI-compatible proxy in front of the UnlimitedAI chat service."""
import secrets
import time
import uuid
from typing import Any, Dict, Optional

import httpx
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from ..config.config_manager import ProxySettings, config_manager
from ..core.auth_session import AuthFailure, AuthSessionManager, Session
from ..core.base_proxy import BaseProxyService
from ..core.message_converter import MessageConverter
from ..core.stream_transcoder import (
    ChatCompletionFramer,
    collect_completion,
    iter_stream_events,
    stream_sse,
)

CHAT_PATH = '/api/chat'
READY_BANNER = 'UnlimitedAI Proxy Ready'


class UpstreamRejection(Exception):
    """The upstream chat endpoint answered with a non-success status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Upstream returned {status_code}")
        self.status_code = status_code
        self.body = body


def error_response(message: str, status_code: int, error_type: str,
                   code: Optional[int] = None, details: Optional[str] = None) -> JSONResponse:
    error: Dict[str, Any] = {'message': message, 'type': error_type}
    if code is not None:
        error['code'] = code
    payload: Dict[str, Any] = {'error': error}
    if details is not None:
        payload['details'] = details
    return JSONResponse(payload, status_code=status_code)


def model_listing(model_id: str) -> Dict[str, Any]:
    """Static single-model listing served by /v1/models."""
    return {
        'object': 'list',
        'data': [{
            'id': model_id,
            'object': 'model',
            'created': 0,
            'owned_by': 'unlimited-ai',
        }],
    }


def transport_error_message(exc: httpx.RequestError) -> str:
    if isinstance(exc, httpx.ConnectTimeout):
        return "Connection timed out"
    if isinstance(exc, httpx.ReadTimeout):
        return "Read timed out"
    if isinstance(exc, httpx.ConnectError):
        return "Connection error"
    return "Request failed"


class UnlimitedProxy(BaseProxyService):
    """Translate chat completion requests into UnlimitedAI chat calls."""

    def __init__(
        self,
        settings: Optional[ProxySettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=time.monotonic,
    ):
        settings = settings or config_manager.settings
        super().__init__(service_name='unlimited', settings=settings, transport=transport)

        self.auth = AuthSessionManager(
            self.client,
            settings.upstream_url,
            headers=settings.request_headers(),
            ttl=settings.session_ttl_seconds,
            rotation_limit=settings.rotation_limit,
            locale_cookie=settings.locale_cookie,
            clock=clock,
        )
        self.converter = MessageConverter()

        # Outermost middleware, so preflight requests never reach the key check
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_routes(self):
        """Register the FastAPI routes."""
        @self.app.middleware('http')
        async def require_api_key(request: Request, call_next):
            api_key = self.settings.api_key
            if api_key and request.method != 'OPTIONS':
                provided = request.headers.get('authorization', '').encode('utf-8')
                if not secrets.compare_digest(provided, f'Bearer {api_key}'.encode('utf-8')):
                    return error_response('Unauthorized', 401, 'authentication_error')
            return await call_next(request)

        @self.app.post('/v1/chat/completions')
        async def chat_completions(request: Request):
            return await self.chat_completions(request)

        @self.app.get('/v1/models')
        async def list_models():
            return self.model_listing()

        @self.app.api_route('/{path:path}', methods=['GET', 'POST', 'OPTIONS'])
        async def fallback(path: str, request: Request):
            if request.method == 'OPTIONS':
                return Response(status_code=204)
            return PlainTextResponse(READY_BANNER)

    def model_listing(self) -> Dict[str, Any]:
        return model_listing(self.settings.default_model)

    def _chat_headers(self, session: Session, conversation_id: str) -> Dict[str, str]:
        base_url = self.auth.base_url
        headers = self.settings.request_headers()
        headers.update({
            'content-type': 'application/json',
            'cookie': session.cookie,
            'x-api-token': session.token,
            'origin': base_url,
            'referer': f'{base_url}/chat/{conversation_id}',
        })
        return headers

    async def _dispatch(self, raw_messages: list, model: str) -> httpx.Response:
        """Send the chat request and return the open streaming response."""
        session = await self.auth.acquire()

        conversation_id = str(uuid.uuid4())
        payload = {
            'messages': [message.to_upstream() for message in self.converter.normalize(raw_messages)],
            'id': conversation_id,
            'selectedChatModel': model,
            'selectedCharacter': None,
            'selectedStory': None,
        }
        request_out = self.client.build_request(
            'POST',
            f'{self.auth.base_url}{CHAT_PATH}',
            headers=self._chat_headers(session, conversation_id),
            json=payload,
        )
        response = await self.client.send(request_out, stream=True)

        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            if response.status_code in (401, 403):
                self.auth.invalidate()
            raise UpstreamRejection(response.status_code, response.text)

        return response

    async def _relay(self, response: httpx.Response, framer: ChatCompletionFramer):
        """Yield SSE lines, releasing the upstream response however iteration ends."""
        try:
            async for line in stream_sse(iter_stream_events(response.aiter_bytes()), framer):
                yield line
        finally:
            await response.aclose()

    async def chat_completions(self, request: Request):
        """Handle POST /v1/chat/completions."""
        try:
            body = await request.json()
        except ValueError:
            return error_response('Request body must be valid JSON', 400, 'invalid_request_error')
        if not isinstance(body, dict):
            return error_response('Request body must be a JSON object', 400, 'invalid_request_error')

        raw_messages = body.get('messages')
        if raw_messages is None:
            raw_messages = []
        if not isinstance(raw_messages, list):
            return error_response('messages must be an array', 400, 'invalid_request_error')

        model = body.get('model') or self.settings.default_model
        stream = body.get('stream') is True

        try:
            response = await self._dispatch(raw_messages, model)
        except AuthFailure as exc:
            return error_response(str(exc), 500, 'auth_error', code=exc.status_code)
        except UpstreamRejection as exc:
            self.logger.error("Upstream error %s: %s", exc.status_code, exc.body[:200])
            return error_response('Upstream Error', 500, 'upstream_error',
                                  code=exc.status_code, details=exc.body)
        except httpx.RequestError as exc:
            self.logger.error("Upstream request failed: %s", exc)
            return error_response(transport_error_message(exc), 500, 'upstream_error', details=str(exc))

        framer = ChatCompletionFramer(model)

        if stream:
            return StreamingResponse(
                self._relay(response, framer),
                media_type='text/event-stream',
                headers={'Cache-Control': 'no-cache', 'Connection': 'keep-alive'},
            )

        try:
            completion = await collect_completion(iter_stream_events(response.aiter_bytes()), framer)
        except (httpx.HTTPError, httpx.StreamError) as exc:
            self.logger.error("Upstream stream interrupted: %s", exc)
            return error_response('Stream interrupted', 500, 'stream_error', details=str(exc))
        finally:
            await response.aclose()
        return JSONResponse(completion)
