"""Authorization Workflow for badge/QR scans.

State machine over accessControle.accessState (noAccess / pending / grant):

1. Scan received: identical codes inside the dedup window are dropped.
2. Not pending: go pending with counter 1 and ask the remote service.
3. Already pending: count the scan. Below max_pending the scan only waits;
   reaching max_pending resets the counter and asks the service again.
4. Remote outcome: grant releases the door, deny clears, failure keeps
   pending for up to max_failed_pending failures and then gives up.

State is persisted before any remote call or side effect is started; remote
calls, outputs and audit events run on the dispatcher.
"""

import asyncio
import logging
import time
from typing import Optional

from config import get_config
from models import (
    AccessControlSection,
    AccessState,
    AccessStatus,
    AuditEvent,
    AuthorizationResult,
    ScanOutcome,
)
from mqtt_client import OutputController
from services.audit import AuditSink
from services.authorizer import AuthorizerError, RemoteAuthorizer
from services.door_opener import DoorOpener
from services.state_store import StateStore
from services.tasks import TaskDispatcher

logger = logging.getLogger(__name__)


def _with_access(state: AccessState, access_state: AccessStatus, pending_counter: int = 0) -> AccessState:
    section = AccessControlSection(access_state=access_state, pending_counter=pending_counter)
    return state.model_copy(update={"access_control": section})


class AuthorizationWorkflow:
    """Handles scans, remote authorization and the resulting access state.

    Deduplication is tracked per instance.
    """

    def __init__(
        self,
        store: StateStore,
        authorizer: RemoteAuthorizer,
        outputs: OutputController,
        door_opener: DoorOpener,
        audit: AuditSink,
        dispatcher: TaskDispatcher,
    ) -> None:
        self._store = store
        self._authorizer = authorizer
        self._outputs = outputs
        self._door_opener = door_opener
        self._audit = audit
        self._dispatcher = dispatcher
        # Last accepted scan time per code (dedup)
        self._recent_codes: dict[str, float] = {}

    def _is_duplicate(self, code: str, now: float) -> bool:
        """Check if the code was accepted within the dedup window.

        Only accepted scans refresh the window.
        """
        dedup_seconds = get_config().scanner.dedup_seconds
        last = self._recent_codes.get(code)
        if last is not None and now - last < dedup_seconds:
            return True
        self._recent_codes[code] = now
        return False

    async def handle_scan(self, code: str, now: Optional[float] = None) -> ScanOutcome:
        """Process one scanned code.

        Args:
            code: Badge number or QR payload.
            now: Scan arrival time, defaults to the current time.

        Returns:
            What was done with the scan.
        """
        if now is None:
            now = time.time()

        if self._is_duplicate(code, now):
            logger.warning(f"Rejected duplicate within {get_config().scanner.dedup_seconds}s: {code}")
            return ScanOutcome.DUPLICATE

        max_pending = get_config().scanner.max_pending
        outcome = ScanOutcome.REQUESTED

        def patch(state: AccessState) -> AccessState:
            nonlocal outcome
            access = state.access_control
            if access.access_state != AccessStatus.PENDING:
                outcome = ScanOutcome.REQUESTED
                return _with_access(state, AccessStatus.PENDING, 1)

            counter = access.pending_counter + 1
            if counter < max_pending:
                outcome = ScanOutcome.WAITING
                return _with_access(state, AccessStatus.PENDING, counter)

            outcome = ScanOutcome.RETRIED
            return _with_access(state, AccessStatus.PENDING, 0)

        await self._store.save(patch)

        if outcome == ScanOutcome.WAITING:
            logger.info(f"Access request for {code} still pending, waiting for the next scan")
        elif outcome == ScanOutcome.RETRIED:
            logger.error(
                f"Access still pending after {max_pending} retries, "
                f"sending a new authorization request for {code}"
            )

        if outcome in (ScanOutcome.REQUESTED, ScanOutcome.RETRIED):
            self._dispatcher.dispatch(self.authorize(code), name=f"authorize:{code}")

        return outcome

    async def _check_with_retry(self, code: str) -> tuple[Optional[AuthorizationResult], str]:
        """Ask the remote service with bounded retries.

        Returns:
            Tuple of (result or None on permanent failure, last error text).
        """
        config = get_config().authorizer
        last_error = "unknown error"

        for attempt in range(1, config.max_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self._authorizer.check(code),
                    timeout=config.timeout_seconds,
                )
                return result, ""
            except asyncio.TimeoutError:
                last_error = f"timeout after {config.timeout_seconds}s"
            except AuthorizerError as e:
                last_error = str(e) or "unknown error"
            except Exception as e:
                logger.exception(f"Unexpected authorizer failure for {code}")
                last_error = str(e) or type(e).__name__

            if attempt < config.max_attempts:
                logger.warning(f"Authorization attempt {attempt}/{config.max_attempts} failed: {last_error}")
                await asyncio.sleep(config.retry_delay_ms / 1000)
            else:
                logger.error(f"Authorization failed after {config.max_attempts} attempts: {last_error}")

        return None, last_error

    async def authorize(self, code: str) -> AccessState:
        """Run remote authorization for a code and apply the outcome.

        Args:
            code: Badge number or QR payload.

        Returns:
            The persisted state after the outcome.
        """
        result, error = await self._check_with_retry(code)

        if result is None:
            return await self._apply_failure(code, error)

        requested = result.requested or time.strftime("%Y-%m-%dT%H:%M:%S%z")
        details = {
            "Granted": result.granted,
            "Requested": requested,
            "CustomerID": result.customer_id or "n/a",
            "Customer": result.customer_name or "n/a",
            "ContactID": result.contact_id or "n/a",
            "Fullname": result.fullname or "n/a",
        }
        logger.info(
            f"{'ACCESS GRANTED' if result.granted else 'NO ACCESS'} | "
            f"customer: {details['Customer']} (ID {details['CustomerID']}) | "
            f"user: {details['Fullname']} (contact {details['ContactID']}) | "
            f"qr: {code} | time: {requested}"
        )

        if result.granted:
            state = await self._store.save(lambda s: _with_access(s, AccessStatus.GRANT))
            self._dispatcher.dispatch(self._release_door(), name="door-release")
            self._audit.record(
                AuditEvent(
                    name="✅ Zugang gewährt",
                    message="Tür geöffnet",
                    tags=["QR"],
                    granted=True,
                    details=details,
                )
            )
        else:
            state = await self._store.save(lambda s: _with_access(s, AccessStatus.NO_ACCESS))
            self._audit.record(
                AuditEvent(
                    name="🚫 Zugang verweigert",
                    message="Zutritt verweigert",
                    tags=["QR"],
                    granted=False,
                    details=details,
                )
            )
        return state

    async def _apply_failure(self, code: str, error: str) -> AccessState:
        max_failed = get_config().authorizer.max_failed_pending

        def patch(state: AccessState) -> AccessState:
            counter = state.access_control.pending_counter + 1
            if counter <= max_failed:
                return _with_access(state, AccessStatus.PENDING, counter)
            return _with_access(state, AccessStatus.NO_ACCESS)

        state = await self._store.save(patch)
        self._audit.record(
            AuditEvent(
                name="Access Error",
                message=f"Failed to validate code {code} | {error or 'no details'}",
                tags=["QR", "ERROR"],
            )
        )
        return state

    async def _release_door(self) -> None:
        """Energize the door output, then signal the terminal's door."""
        channel = get_config().relay.door_output
        if not await self._outputs.set_output(channel, True):
            logger.error(f"Door output {channel} could not be switched")
        self._door_opener.open()

    def cleanup_old_entries(self, max_age_seconds: int = 3600, now: Optional[float] = None) -> int:
        """Forget dedup entries older than max_age_seconds.

        Returns:
            Number of entries removed.
        """
        if now is None:
            now = time.time()
        old_codes = [code for code, ts in self._recent_codes.items() if now - ts > max_age_seconds]
        for code in old_codes:
            del self._recent_codes[code]

        if old_codes:
            logger.debug(f"Cleaned up {len(old_codes)} old scan dedup entries")
        return len(old_codes)
