"""Read-only access to the ticket contract on the ledger

The ledger is the source of truth for ticket existence, ownership and
lifecycle transitions. The indexer consumes it through :class:`LedgerReader`;
production uses :class:`Web3LedgerReader` against a JSON-RPC node, tests use
an in-memory implementation.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from ticketgate.core.config import settings
from ticketgate.core.errors import LedgerUnavailableError, MalformedLedgerEventError

logger = logging.getLogger(__name__)

# Lifecycle event types, keyed by the contract event they are decoded from
CREATED = "Created"
PURCHASED = "Purchased"
DOWNLOADED = "Downloaded"
REFUNDED = "Refunded"

CONTRACT_EVENT_NAMES = {
    CREATED: "TicketCreated",
    PURCHASED: "TicketPurchased",
    DOWNLOADED: "TicketDownloaded",
    REFUNDED: "TicketRefunded",
}
LIFECYCLE_EVENT_TYPES = tuple(CONTRACT_EVENT_NAMES)

# Which event arg holds the counterparty and the amount, per event type
_PARTY_ARGS = {CREATED: "seller", PURCHASED: "buyer", DOWNLOADED: "buyer", REFUNDED: "buyer"}
_AMOUNT_ARGS = {CREATED: "price", PURCHASED: "price", REFUNDED: "refundAmount"}

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

TICKET_STRUCT_FIELDS = (
    "ticketId", "eventName", "organizer", "eventDate", "saleEndDate", "price",
    "posterUrl", "ticketImageUrl", "seller", "buyer", "isSold", "isDownloaded", "isRefunded",
)


def _event_abi(name: str, inputs: List[tuple]) -> Dict[str, Any]:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [
            {"indexed": indexed, "name": arg, "type": arg_type}
            for arg, arg_type, indexed in inputs
        ],
    }


TICKET_CONTRACT_ABI = [
    _event_abi("TicketCreated", [
        ("ticketId", "uint256", True),
        ("eventName", "string", False),
        ("seller", "address", True),
        ("price", "uint256", False),
        ("eventDate", "uint256", False),
    ]),
    _event_abi("TicketPurchased", [
        ("ticketId", "uint256", True),
        ("buyer", "address", True),
        ("price", "uint256", False),
    ]),
    _event_abi("TicketDownloaded", [
        ("ticketId", "uint256", True),
        ("buyer", "address", True),
    ]),
    _event_abi("TicketRefunded", [
        ("ticketId", "uint256", True),
        ("buyer", "address", True),
        ("refundAmount", "uint256", False),
    ]),
    {
        "name": "getTicket",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "ticketId", "type": "uint256"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "ticketId", "type": "uint256"},
                {"name": "eventName", "type": "string"},
                {"name": "organizer", "type": "string"},
                {"name": "eventDate", "type": "uint256"},
                {"name": "saleEndDate", "type": "uint256"},
                {"name": "price", "type": "uint256"},
                {"name": "posterUrl", "type": "string"},
                {"name": "ticketImageUrl", "type": "string"},
                {"name": "seller", "type": "address"},
                {"name": "buyer", "type": "address"},
                {"name": "isSold", "type": "bool"},
                {"name": "isDownloaded", "type": "bool"},
                {"name": "isRefunded", "type": "bool"},
            ],
        }],
    },
]


@dataclass(frozen=True)
class LifecycleEvent:
    """A decoded, immutable ledger lifecycle event"""
    event_type: str
    ticket_id: int
    tx_hash: str
    block_number: int
    log_index: int
    parties: Dict[str, str] = field(default_factory=dict)
    amount: Optional[str] = None
    timestamp: Optional[datetime] = None
    args: Dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self):
        """Ledger order: block number, then log index within the block"""
        return (self.block_number, self.log_index)

    @property
    def party(self) -> Optional[str]:
        return self.parties.get(_PARTY_ARGS[self.event_type])

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe representation stored on the processed-event log"""
        return {
            "type": self.event_type,
            "ticket_id": self.ticket_id,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "parties": dict(self.parties),
            "amount": self.amount,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str) and value:
        return value if value.startswith("0x") else f"0x{value}"
    raise MalformedLedgerEventError(f"Expected a hex value, got {value!r}")


def decode_lifecycle_event(event_type: str, raw: Dict[str, Any]) -> LifecycleEvent:
    """Decode one raw log entry into a :class:`LifecycleEvent`.

    Args:
        event_type: One of LIFECYCLE_EVENT_TYPES
        raw: Mapping with ``args``, ``blockNumber``, ``logIndex``,
            ``transactionHash`` and optionally ``timestamp`` (unix seconds)

    Raises:
        MalformedLedgerEventError: If a required field is missing or has the wrong shape
    """
    if event_type not in CONTRACT_EVENT_NAMES:
        raise MalformedLedgerEventError(f"Unknown lifecycle event type: {event_type}")

    try:
        args = dict(raw["args"])
        ticket_id = int(args["ticketId"])
        block_number = int(raw["blockNumber"])
        log_index = int(raw["logIndex"])
        tx_hash = _hex(raw["transactionHash"]).lower()

        party_arg = _PARTY_ARGS[event_type]
        party = args[party_arg]
        if not isinstance(party, str) or not party:
            raise MalformedLedgerEventError(f"{event_type} event has no {party_arg} address")

        amount = None
        amount_arg = _AMOUNT_ARGS.get(event_type)
        if amount_arg:
            amount = str(int(args[amount_arg]))

        timestamp = None
        if raw.get("timestamp") is not None:
            timestamp = datetime.fromtimestamp(int(raw["timestamp"]), tz=timezone.utc)
    except MalformedLedgerEventError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedLedgerEventError(f"Malformed {event_type} event: {e!r}") from e

    if ticket_id < 0 or block_number < 0 or log_index < 0:
        raise MalformedLedgerEventError(f"Negative ticket id, block or log index in {event_type} event")

    return LifecycleEvent(
        event_type=event_type,
        ticket_id=ticket_id,
        tx_hash=tx_hash,
        block_number=block_number,
        log_index=log_index,
        parties={party_arg: party.lower()},
        amount=amount,
        timestamp=timestamp,
        args=args,
    )


class LedgerReader(ABC):
    """Read interface to the ticket contract.

    Implementations raise :class:`LedgerUnavailableError` for connection
    failures and timeouts so the indexer can retry on its next tick.
    """

    endpoint: str = ""
    contract_address: str = ""

    @abstractmethod
    def get_block_number(self) -> int:
        """Return the current head block number"""

    @abstractmethod
    def get_events(self, event_type: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """Return raw log entries of one lifecycle type in [from_block, to_block]"""

    @abstractmethod
    def get_ticket(self, ticket_id: int) -> Dict[str, Any]:
        """Return the full on-chain ticket struct keyed by TICKET_STRUCT_FIELDS"""


class Web3LedgerReader(LedgerReader):
    """LedgerReader backed by a web3.py HTTP provider"""

    def __init__(self, rpc_url: Optional[str] = None, contract_address: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.endpoint = rpc_url or settings.LEDGER_RPC_URL
        self.contract_address = (contract_address or settings.CONTRACT_ADDRESS).lower()
        timeout = timeout or settings.LEDGER_RPC_TIMEOUT_SECONDS
        self.w3 = Web3(Web3.HTTPProvider(self.endpoint, request_kwargs={"timeout": timeout}))
        self._contract = None

    @property
    def contract(self):
        if self._contract is None:
            if not self.contract_address:
                raise LedgerUnavailableError("CONTRACT_ADDRESS is not configured")
            self._contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address),
                abi=TICKET_CONTRACT_ABI,
            )
        return self._contract

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
            raise LedgerUnavailableError(f"Ledger unavailable during {description}: {e}") from e
        except ContractLogicError as e:
            # Reverts are not transient
            raise MalformedLedgerEventError(f"Contract rejected {description}: {e}") from e
        except Web3Exception as e:
            raise LedgerUnavailableError(f"Ledger error during {description}: {e}") from e

    def get_block_number(self) -> int:
        return int(self._call("get_block_number", lambda: self.w3.eth.block_number))

    def get_events(self, event_type: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        contract_event = getattr(self.contract.events, CONTRACT_EVENT_NAMES[event_type])()
        logs = self._call(
            f"get_logs({event_type}, {from_block}-{to_block})",
            contract_event.get_logs,
            from_block=from_block,
            to_block=to_block,
        )

        block_timestamps: Dict[int, int] = {}
        events = []
        for log in logs:
            block_number = log["blockNumber"]
            if block_number not in block_timestamps:
                block = self._call(f"get_block({block_number})", self.w3.eth.get_block, block_number)
                block_timestamps[block_number] = block["timestamp"]
            events.append({
                "event": log["event"],
                "args": dict(log["args"]),
                "blockNumber": block_number,
                "logIndex": log["logIndex"],
                "transactionHash": log["transactionHash"],
                "timestamp": block_timestamps[block_number],
            })
        return events

    def get_ticket(self, ticket_id: int) -> Dict[str, Any]:
        raw = self._call(
            f"getTicket({ticket_id})",
            self.contract.functions.getTicket(ticket_id).call,
        )
        return dict(zip(TICKET_STRUCT_FIELDS, raw))
