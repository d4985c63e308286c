# calsync/services/calendar/oauth_handler.py
"""
OAuth2 flows for Google Calendar and Microsoft Graph.

The ``state`` parameter is a Fernet token (encrypted and HMAC-signed) holding
the business, staff member, provider and a single-use nonce. The nonce lives
in Redis with the same TTL as the state, so a callback can be accepted once.
"""
import json
import logging
import os
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import msal
import requests
from cryptography.fernet import Fernet, InvalidToken
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from sqlalchemy.orm import Session

from calsync.config.redis import RedisKeys, get_redis
from calsync.config.settings import get_settings
from calsync.models.calendar_connection import GOOGLE_CALENDAR_SCOPE, MICROSOFT_CALENDAR_SCOPE, CalendarConnection
from calsync.schemas.calendar_events import CalendarProvider
from calsync.services.calendar.connections import TokenSet, deactivate_connection, provision_connection
from calsync.services.calendar.errors import (
    AuthorizationFailed,
    ExpiredState,
    InvalidState,
    MissingCredentials,
    UnsupportedProvider,
)
from calsync.services.calendar.google_calendar_service import GOOGLE_TOKEN_URI
from calsync.services.calendar.outlook_service import GRAPH_ENDPOINT
from calsync.utils.timeutils import as_utc, utcnow

# Google may grant previously approved scopes alongside ours
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

logger = logging.getLogger(__name__)

MICROSOFT_AUTHORITY = "https://login.microsoftonline.com/common"
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"

OAUTH_PROVIDERS = (CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT)


def _oauth_provider(provider) -> CalendarProvider:
    try:
        provider = CalendarProvider(provider)
    except ValueError:
        raise UnsupportedProvider(f"Unsupported calendar provider: {provider}")
    if provider not in OAUTH_PROVIDERS:
        raise UnsupportedProvider(f"{provider.value} does not use OAuth")
    return provider


class OAuthStateSigner:
    """Issues and verifies signed, expiring, single-use state blobs"""

    def __init__(self, key: str, redis_client, ttl_seconds: int, clock: Callable[[], datetime] = utcnow):
        if not key:
            raise MissingCredentials("OAUTH_STATE_KEY or CALENDAR_ENCRYPTION_KEY must be set")
        self.fernet = Fernet(key.encode() if isinstance(key, str) else key)
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def issue(self, business_id, staff_member_id, provider: CalendarProvider) -> str:
        now = self.clock()
        nonce = secrets.token_urlsafe(16)
        payload = {
            "business_id": str(business_id),
            "staff_member_id": str(staff_member_id),
            "provider": provider.value,
            "nonce": nonce,
            "issued_at": int(now.timestamp()),
        }
        self.redis.setex(RedisKeys.OAUTH_STATE_NONCE.format(nonce=nonce), self.ttl_seconds, provider.value)
        token = self.fernet.encrypt_at_time(json.dumps(payload).encode(), int(now.timestamp()))
        return token.decode("ascii")

    def verify(self, state: str, provider: CalendarProvider) -> dict:
        if not state:
            raise InvalidState("Missing OAuth state")
        token = state.encode("ascii", errors="replace")
        try:
            issued_at = self.fernet.extract_timestamp(token)
            payload = json.loads(self.fernet.decrypt(token))
        except (InvalidToken, ValueError):
            logger.warning("Rejected OAuth state with invalid signature")
            raise InvalidState("OAuth state could not be verified")

        age = int(self.clock().timestamp()) - issued_at
        if age > self.ttl_seconds:
            logger.warning(f"Rejected OAuth state issued {age}s ago")
            raise ExpiredState("OAuth state has expired, please start again")

        if payload.get("provider") != provider.value:
            raise InvalidState("OAuth state was issued for a different provider")

        nonce = payload.get("nonce")
        if not nonce or self.redis.getdel(RedisKeys.OAUTH_STATE_NONCE.format(nonce=nonce)) is None:
            logger.warning("Rejected OAuth state with unknown or reused nonce")
            raise InvalidState("OAuth state has already been used")
        return payload


class OAuthHandler:
    """Authorization URLs, callbacks and token refresh for OAuth calendar providers"""

    def __init__(self, db: Session, redis_client=None, clock: Callable[[], datetime] = utcnow,
                 http: Optional[requests.Session] = None):
        self.settings = get_settings()
        self.db = db
        self.redis = redis_client if redis_client is not None else get_redis()
        self.clock = clock
        self.http = http or requests.Session()
        self.signer = OAuthStateSigner(
            self.settings.state_key, self.redis, self.settings.OAUTH_STATE_TTL_SECONDS, clock=clock
        )

    # ---- provider configuration ----

    def google_client_config(self) -> dict:
        if not (self.settings.GOOGLE_CLIENT_ID and self.settings.GOOGLE_CLIENT_SECRET):
            raise MissingCredentials("Google OAuth client is not configured")
        return {
            "web": {
                "client_id": self.settings.GOOGLE_CLIENT_ID,
                "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                "redirect_uris": [self.settings.GOOGLE_REDIRECT_URI],
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
            }
        }

    def google_flow(self) -> Flow:
        # No PKCE verifier: it would not survive between the two requests
        return Flow.from_client_config(
            self.google_client_config(),
            scopes=[GOOGLE_CALENDAR_SCOPE],
            redirect_uri=self.settings.GOOGLE_REDIRECT_URI,
            autogenerate_code_verifier=False,
        )

    def msal_app(self) -> msal.ConfidentialClientApplication:
        if not (self.settings.MICROSOFT_CLIENT_ID and self.settings.MICROSOFT_CLIENT_SECRET):
            raise MissingCredentials("Microsoft OAuth client is not configured")
        return msal.ConfidentialClientApplication(
            self.settings.MICROSOFT_CLIENT_ID,
            authority=MICROSOFT_AUTHORITY,
            client_credential=self.settings.MICROSOFT_CLIENT_SECRET,
        )

    # ---- authorization ----

    def authorization_url(self, provider, business_id, staff_member_id) -> str:
        provider = _oauth_provider(provider)
        state = self.signer.issue(business_id, staff_member_id, provider)

        if provider == CalendarProvider.GOOGLE:
            url, _ = self.google_flow().authorization_url(
                access_type="offline",  # Gets refresh token
                include_granted_scopes="true",
                prompt="consent",  # Force consent screen to get refresh token
                state=state,
            )
        else:
            url = self.msal_app().get_authorization_request_url(
                scopes=[MICROSOFT_CALENDAR_SCOPE],
                state=state,
                redirect_uri=self.settings.MICROSOFT_REDIRECT_URI,
                prompt="consent",
            )

        logger.info(f"Generated {provider.value} authorization URL for staff member {staff_member_id}")
        return url

    def handle_callback(self, provider, code: str, state: str) -> CalendarConnection:
        """Verify state, exchange the code and provision the connection"""
        provider = _oauth_provider(provider)
        payload = self.signer.verify(state, provider)
        if not code:
            raise AuthorizationFailed("Authorization code is missing")

        if provider == CalendarProvider.GOOGLE:
            tokens, uid = self._exchange_google(code)
        else:
            tokens, uid = self._exchange_microsoft(code)

        connection = provision_connection(
            self.db,
            business_id=payload["business_id"],
            staff_member_id=payload["staff_member_id"],
            provider=provider,
            uid=uid,
            tokens=tokens,
        )
        self.db.commit()
        logger.info(f"Connected {provider.value} calendar {connection.id} for staff member {payload['staff_member_id']}")
        return connection

    def _exchange_google(self, code: str):
        flow = self.google_flow()
        try:
            flow.fetch_token(code=code)
        except (OAuth2Error, requests.RequestException) as e:
            logger.error(f"Failed to exchange Google authorization code: {e}")
            raise AuthorizationFailed("Google authorization failed")

        credentials = flow.credentials
        try:
            service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
            primary = service.calendarList().get(calendarId="primary").execute()
        except Exception as e:
            logger.error(f"Failed to read Google primary calendar: {e}")
            raise AuthorizationFailed("Could not read the Google account's calendar")

        tokens = TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=as_utc(credentials.expiry) if credentials.expiry else None,
            scopes=" ".join(credentials.scopes or [GOOGLE_CALENDAR_SCOPE]),
        )
        return tokens, primary.get("id")

    def _exchange_microsoft(self, code: str):
        result = self.msal_app().acquire_token_by_authorization_code(
            code,
            scopes=[MICROSOFT_CALENDAR_SCOPE],
            redirect_uri=self.settings.MICROSOFT_REDIRECT_URI,
        )
        if "error" in result:
            logger.error(f"Microsoft token exchange error: {result.get('error_description')}")
            raise AuthorizationFailed("Microsoft authorization failed")

        try:
            response = self.http.get(
                f"{GRAPH_ENDPOINT}/me",
                headers={"Authorization": f"Bearer {result['access_token']}"},
                timeout=30,
            )
            response.raise_for_status()
            uid = response.json().get("id")
        except requests.RequestException as e:
            logger.error(f"Failed to read Microsoft profile: {e}")
            raise AuthorizationFailed("Could not read the Microsoft account profile")

        scopes = result.get("scope") or MICROSOFT_CALENDAR_SCOPE
        if isinstance(scopes, list):
            scopes = " ".join(scopes)
        tokens = TokenSet(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=self.clock() + timedelta(seconds=int(result.get("expires_in", 3600))),
            scopes=scopes,
        )
        return tokens, uid

    # ---- refresh ----

    def refresh_token(self, connection: CalendarConnection) -> bool:
        """Refresh and persist the access token; deactivates on a rejected refresh token.

        Serialized per connection so concurrent workers do not race on the
        provider's rotating refresh tokens.
        """
        if not connection.is_oauth_provider or not connection.refresh_token_encrypted:
            return False

        lock = self.redis.lock(
            RedisKeys.TOKEN_REFRESH_LOCK.format(connection_id=connection.id),
            timeout=30,
            blocking_timeout=10,
        )
        if not lock.acquire():
            logger.warning(f"Timed out waiting for token refresh lock on connection {connection.id}")
            return False

        try:
            if connection in self.db:
                self.db.refresh(connection)
            if not connection.token_expired(now=self.clock(), margin_seconds=self.settings.TOKEN_REFRESH_MARGIN_SECONDS):
                # Another worker refreshed while we waited
                return True

            if connection.provider == CalendarProvider.GOOGLE.value:
                refreshed = self._refresh_google(connection)
            else:
                refreshed = self._refresh_microsoft(connection)
            self.db.commit()
            return refreshed
        finally:
            lock.release()

    def _refresh_google(self, connection: CalendarConnection) -> bool:
        credentials = Credentials(
            token=None,
            refresh_token=connection.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.GOOGLE_CLIENT_ID,
            client_secret=self.settings.GOOGLE_CLIENT_SECRET,
        )
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            deactivate_connection(self.db, connection, f"Google refresh token rejected: {e}")
            return False
        except TransportError as e:
            logger.warning(f"Google token refresh failed for connection {connection.id}: {e}")
            return False

        connection.access_token = credentials.token
        if credentials.refresh_token and credentials.refresh_token != connection.refresh_token:
            connection.refresh_token = credentials.refresh_token
        connection.token_expires_at = as_utc(credentials.expiry) if credentials.expiry else None
        logger.info(f"Refreshed Google access token for connection {connection.id}")
        return True

    def _refresh_microsoft(self, connection: CalendarConnection) -> bool:
        result = self.msal_app().acquire_token_by_refresh_token(
            connection.refresh_token,
            scopes=[MICROSOFT_CALENDAR_SCOPE],
        )
        if "error" in result:
            if result.get("error") == "invalid_grant":
                deactivate_connection(self.db, connection,
                                      f"Microsoft refresh token rejected: {result.get('error_description')}")
            else:
                logger.warning(f"Microsoft token refresh failed for connection {connection.id}: {result.get('error')}")
            return False

        connection.access_token = result["access_token"]
        if result.get("refresh_token"):
            connection.refresh_token = result["refresh_token"]
        connection.token_expires_at = self.clock() + timedelta(seconds=int(result.get("expires_in", 3600)))
        logger.info(f"Refreshed Microsoft access token for connection {connection.id}")
        return True
