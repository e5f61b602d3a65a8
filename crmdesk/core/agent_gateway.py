import json
import logging
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import requests
import tenacity

from crmdesk.core.event_stream import collect_stream_output
from crmdesk.core.fields import extract_agent_output, first_present

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE = 300
MAX_BODY_SNIPPET = 200

# 0.5s, 1s, 2s... for blocking calls; 0.6s, 1.2s, 1.8s... for streams and uploads
BLOCKING_BACKOFF = tenacity.wait_exponential(multiplier=0.5)
LINEAR_BACKOFF = tenacity.wait_incrementing(start=0.6, increment=0.6)

RETRYABLE_MESSAGES = (
    'connection reset',
    'connection refused',
    'connection aborted',
    'timed out',
    'read timeout',
    'remote end closed',
    'name or service not known',
    'temporary failure in name resolution',
    'nodename nor servname',
    'network is unreachable',
    'no route to host',
)

HTML_RESPONSE_HINT = (
    "Agent returned HTML instead of JSON; check that the agent URL points at the "
    "/v1/chat-messages endpoint"
)


class AgentError(Exception):
    """Base error for agent gateway failures."""


class AgentNetworkError(AgentError):
    """Transport-level failure; safe to retry."""


class AgentHTTPError(AgentError):
    """The agent answered with a non-success status. Not retried."""

    def __init__(self, status: int, message: str = '', action: str = 'Agent request failed'):
        self.status = status
        self.message = (message or '')[:MAX_ERROR_MESSAGE]
        text = f"{action}: {status} {self.message}" if self.message else f"{action}: {status}"
        super().__init__(text)


class AgentResponseError(AgentError):
    """The agent answered, but the body could not be understood."""


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, AgentNetworkError):
        return True
    if isinstance(error, AgentError):
        return False
    if isinstance(error, (requests.ConnectionError, requests.Timeout,
                          requests.exceptions.ChunkedEncodingError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGES)


def format_error(error: BaseException) -> str:
    """One-line description of an error including its underlying cause."""
    message = str(error) or type(error).__name__ or 'Request failed'
    parts = [message]
    cause = error.__cause__ or error.__context__
    if cause is not None:
        cause_message = str(cause)
        if cause_message and cause_message != message:
            parts.append(cause_message)
    return ' | '.join(parts)


def build_upload_url(chat_messages_url: str) -> str:
    """
    Derive the file upload endpoint from the chat endpoint.
    ``https://host/api/v1/chat-messages`` -> ``https://host/api/v1/files/upload``
    """
    parts = urlsplit(chat_messages_url)
    segments = [s for s in parts.path.split('/') if s]
    if 'chat-messages' in segments:
        chat_index = len(segments) - 1 - segments[::-1].index('chat-messages')
        before_chat = segments[:chat_index]
    else:
        before_chat = segments

    if 'v1' in before_chat:
        v1_index = len(before_chat) - 1 - before_chat[::-1].index('v1')
        path = '/' + '/'.join(before_chat[:v1_index + 1]) + '/files/upload'
    else:
        path = '/files/upload'
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def _error_message(response: requests.Response) -> str:
    text = response.text or ''
    try:
        data = json.loads(text) if text else None
    except ValueError:
        data = None
    if isinstance(data, dict):
        message = data.get('error') or data.get('message')
        if message:
            return str(message)
    return text


class AgentGateway:
    """
    Client for a chat-completion agent.

    Supports a blocking mode (one JSON answer) and a streaming mode (event
    stream). Transport failures are retried with backoff; HTTP errors are not.
    """

    def __init__(self, url: str, api_key: str, session: Optional[requests.Session] = None,
                 timeout: float = 240, stream_timeout: float = 180, upload_timeout: float = 90,
                 retries: int = 1, sleep: Callable[[float], None] = time.sleep):
        self.url = url
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self.upload_timeout = upload_timeout
        self.retries = retries
        self._sleep = sleep

    def _headers(self, json_body: bool = True) -> Dict[str, str]:
        headers = {'Authorization': f'Bearer {self.api_key}'}
        if json_body:
            headers['Content-Type'] = 'application/json'
        return headers

    def _retry(self, action: Callable[[], Any], wait, label: str) -> Any:
        """
        Run ``action`` under the gateway retry policy.

        Only transport failures are retried. Agent errors raised by ``action``
        pass through untouched; any other failure that cannot be retried
        becomes an ``AgentError``.
        """
        def log_retry(retry_state):
            error = retry_state.outcome.exception()
            logger.warning(
                f"{label} failed (attempt {retry_state.attempt_number}), "
                f"retrying in {retry_state.next_action.sleep:.1f}s: {error}"
            )

        retrying = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.retries + 1),
            wait=wait,
            retry=tenacity.retry_if_exception(is_retryable_error),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(action)
        except AgentError:
            raise
        except Exception as e:
            if is_retryable_error(e):
                raise AgentNetworkError(format_error(e)) from e
            raise AgentError(f"{label} failed: {format_error(e)}") from e

    def complete_blocking(self, payload: Dict[str, Any]) -> str:
        body = dict(payload, response_mode='blocking')

        def post():
            return self.session.post(self.url, headers=self._headers(), json=body, timeout=self.timeout)

        response = self._retry(post, BLOCKING_BACKOFF, 'Agent request')
        if not response.ok:
            raise AgentHTTPError(response.status_code, _error_message(response))

        text = response.text or ''
        try:
            data = json.loads(text) if text else None
        except ValueError:
            data = None
        if data is None:
            trimmed = text.strip()
            if trimmed.startswith('<'):
                raise AgentResponseError(HTML_RESPONSE_HINT)
            snippet = trimmed[:MAX_BODY_SNIPPET]
            raise AgentResponseError(
                f"Agent returned non-JSON, first {MAX_BODY_SNIPPET} chars: {snippet}" if snippet
                else "Agent returned non-JSON"
            )

        output = extract_agent_output(data).strip()
        logger.info(f"Agent blocking response: {len(output)} chars")
        return output

    def complete_streaming(self, payload: Dict[str, Any]) -> str:
        body = dict(payload, response_mode='streaming')

        def stream():
            with self.session.post(self.url, headers=self._headers(), json=body,
                                   timeout=self.stream_timeout, stream=True) as response:
                if not response.ok:
                    raise AgentHTTPError(response.status_code, _error_message(response))
                content_type = response.headers.get('Content-Type', '')
                if 'text/html' in content_type:
                    raise AgentResponseError(HTML_RESPONSE_HINT)
                response.encoding = 'utf-8'
                return collect_stream_output(response.iter_content(chunk_size=None, decode_unicode=True))

        output = self._retry(stream, LINEAR_BACKOFF, 'Agent stream')
        logger.info(f"Agent streaming response: {len(output)} chars")
        return output

    def complete(self, payload: Dict[str, Any]) -> str:
        """
        Blocking call first, streaming as the fallback when the blocking call
        fails or comes back empty.
        """
        blocking_error: Optional[AgentError] = None
        try:
            output = self.complete_blocking(payload)
        except AgentError as e:
            logger.warning(f"Blocking agent call failed, falling back to streaming: {e}")
            blocking_error = e
            output = ''
        if output:
            return output

        output = self.complete_streaming(payload)
        if not output and blocking_error is not None:
            raise blocking_error
        return output

    def upload_file(self, file_name: str, content: bytes, mime_type: str, user: str) -> str:
        """Upload an attachment for use in a later completion; returns the remote file id."""
        upload_url = build_upload_url(self.url)

        def post():
            return self.session.post(
                upload_url,
                headers=self._headers(json_body=False),
                files={'file': (file_name, content, mime_type or 'application/octet-stream')},
                data={'user': user},
                timeout=self.upload_timeout,
            )

        response = self._retry(post, LINEAR_BACKOFF, 'Attachment upload')
        if not response.ok:
            raise AgentHTTPError(response.status_code, _error_message(response),
                                 action='Attachment upload failed')
        try:
            data = response.json()
        except ValueError:
            data = None
        file_id = first_present(data if isinstance(data, dict) else {}, ('id', 'file_id', 'fileId'))
        if not file_id:
            raise AgentResponseError("Attachment upload returned no file id")
        logger.info(f"Uploaded attachment '{file_name}' as {file_id}")
        return str(file_id)
