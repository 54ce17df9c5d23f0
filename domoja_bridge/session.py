#
# Copyright 2025 The DomojaBridge contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Domoja server session: cookie login with retries.

Login Strategy:
===============

- Success is the presence of a Set-Cookie header, not the status code:
  some deployments answer 200 without opening a session.
- Failures are retried after a fixed delay, forever unless a timeout is
  configured. There is no exponential backoff.
- The first ``max_logged_retries`` failures log a warning, the next one
  logs that we continue silently, and later ones log nothing until a
  login succeeds. The counter lives on the manager, so a re-login forced
  by a 401 keeps the quiet mode of an earlier outage.
- Only one login loop runs at a time; concurrent callers wait for it.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import aiohttp

logger = logging.getLogger('domoja-bridge')

# Splits "a=1; Path=/, b=2; HttpOnly" between cookies but not inside
# "Expires=Mon, 11 Dec 2023 14:29:28 GMT"
_COOKIE_SPLIT = re.compile(r',\s*(?=[^;,=\s]+=)')


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOGGING_IN = "logging_in"
    AUTHENTICATED = "authenticated"


@dataclass
class LoginPolicy:
    """Controls how a login sequence retries.

    timeout: give up after this many seconds (0 means forever)
    delay: seconds between attempts
    max_logged_retries: failures logged before continuing silently
    max_attempts: give up after this many attempts (0 means no limit)
    """

    timeout: float = 0
    delay: float = 10
    max_logged_retries: int = 2
    max_attempts: int = 0


# Used inline when a command gets a 401: quick, bounded and quiet
INLINE_RELOGIN = LoginPolicy(timeout=10, delay=1, max_logged_retries=0, max_attempts=3)


def parse_set_cookie(set_cookie: Union[str, Iterable[str]]) -> str:
    """Turn Set-Cookie header(s) into a value usable as a Cookie header.

    ``remember_me=Yw; Max-Age=604800; Path=/; Expires=Mon, 11 Dec 2023
    14:29:28 GMT; HttpOnly, connect.sid=s%3Axs; Path=/; HttpOnly``
    becomes ``remember_me=Yw; connect.sid=s%3Axs;``.
    """
    if not isinstance(set_cookie, str):
        set_cookie = ', '.join(set_cookie)

    cookies = []
    for group in _COOKIE_SPLIT.split(set_cookie):
        pair = group.split(';', 1)[0].strip()
        if '=' in pair:
            cookies.append(f"{pair};")
    return ' '.join(cookies)


def is_authorization_error(error: Any) -> bool:
    """Check whether an error reported by the server means HTTP 401."""
    if error is None:
        return False

    if isinstance(error, Mapping):
        candidates = [error.get(key) for key in ('description', 'status', 'code', 'message')]
    else:
        candidates = [getattr(error, 'description', None), getattr(error, 'status', None), error]

    for candidate in candidates:
        if candidate is None or isinstance(candidate, bool):
            continue
        text = str(candidate)
        if re.search(r'\b401\b', text) or 'unauthorized' in text.lower():
            return True
    return False


class SessionManager:
    """Owns the Domoja session cookie and the login retry state."""

    def __init__(self, url: str, username: str, password: str,
                 policy: Optional[LoginPolicy] = None, request_timeout: float = 30):
        self.url = url
        self.username = username
        self.password = password
        self.policy = policy or LoginPolicy()
        self.request_timeout = request_timeout

        self.cookie: str = ''
        self.state = SessionState.UNAUTHENTICATED

        # Survive across login() calls, reset only by a successful login
        self.retry_count = 0
        self.silent = False

        self._login_task: Optional[asyncio.Task] = None

    @property
    def base_url(self) -> str:
        return self.url if self.url.endswith('/') else self.url + '/'

    def endpoint(self, path: str) -> str:
        return self.base_url + path

    def headers(self) -> Dict[str, str]:
        """Headers carrying the session cookie."""
        return {'Cookie': self.cookie}

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    def reset(self):
        """Forget the session and the retry history."""
        self.cookie = ''
        self.state = SessionState.UNAUTHENTICATED
        self.retry_count = 0
        self.silent = False

    async def login(self, policy: Optional[LoginPolicy] = None) -> bool:
        """Log in, retrying according to the policy.

        If a login sequence is already running, wait for its outcome
        instead of starting a second one (bounded by the policy timeout).

        Returns:
            True once logged in, False if the timeout elapsed
        """
        policy = policy or self.policy

        if self._login_task is not None and not self._login_task.done():
            logger.debug("Login to domoja server already in progress, waiting for it")
            try:
                if policy.timeout:
                    return await asyncio.wait_for(asyncio.shield(self._login_task), policy.timeout)
                return await asyncio.shield(self._login_task)
            except asyncio.TimeoutError:
                logger.warning("Timeout while waiting for the running login to domoja server")
                return False

        self._login_task = asyncio.ensure_future(self._login_loop(policy))
        return await asyncio.shield(self._login_task)

    async def _login_loop(self, policy: LoginPolicy) -> bool:
        start_time = time.monotonic()
        self.state = SessionState.LOGGING_IN
        attempts = 0

        while True:
            attempts += 1
            try:
                status, reason, set_cookie = await self._post_login()
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self._login_failed(f"got error: {e!r}", policy)
            else:
                if set_cookie:
                    self._login_succeeded(set_cookie)
                    return True
                self._login_failed(f"got no set-cookie: {status} {reason}", policy)

            if policy.max_attempts and attempts >= policy.max_attempts:
                logger.warning(f"Giving up login to domoja server after {attempts} attempts")
                self.state = SessionState.UNAUTHENTICATED
                return False

            await asyncio.sleep(policy.delay)

            if policy.timeout and time.monotonic() - start_time > policy.timeout:
                logger.warning(f"Timeout while trying to connect to domoja server after {self.retry_count} retries...")
                self.state = SessionState.UNAUTHENTICATED
                return False

    def _login_succeeded(self, set_cookie: List[str]):
        if self.retry_count > 1:
            logger.warning(f"Successful connection to domoja server after {self.retry_count} retries!")
        self.cookie = parse_set_cookie(set_cookie)
        self.retry_count = 0
        self.silent = False
        self.state = SessionState.AUTHENTICATED
        logger.info("Logged in to domoja server")

    def _login_failed(self, reason: str, policy: LoginPolicy):
        self.retry_count += 1
        if self.silent:
            return
        if self.retry_count <= policy.max_logged_retries:
            logger.warning(f"Cannot connect to domoja server for login ({reason}), will retry in {policy.delay} seconds")
        else:
            logger.warning(f"Could not connect after {policy.max_logged_retries} retries to domoja server for login ({reason}), continuing silently")
            self.silent = True

    async def _post_login(self) -> Tuple[int, str, List[str]]:
        """Post the credentials.

        Returns:
            (status, reason, Set-Cookie header values)
        """
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout, cookie_jar=aiohttp.DummyCookieJar()) as session:
            async with session.post(
                self.endpoint('login.html'),
                data={
                    'username': self.username,
                    'password': self.password,
                    'remember_me': 'true',
                },
                allow_redirects=False,
            ) as resp:
                await resp.text()  # unused, drains the response
                return resp.status, resp.reason or '', resp.headers.getall('Set-Cookie', [])
