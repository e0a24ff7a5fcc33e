"""Host/companion snapshot sync.

Modules:
    responder    — Host side: answer data requests, push chunked transfers
    receiver     — Companion side: accept startTransfer/chunk messages, reassemble
    orchestrator — Companion side: cache-first fetch with retry and backoff
"""

from bridgecast.sync.orchestrator import SyncOrchestrator
from bridgecast.sync.receiver import CompletedTransfer, TransferReceiver
from bridgecast.sync.responder import SyncResponder

__all__ = [
    "SyncOrchestrator",
    "SyncResponder",
    "TransferReceiver",
    "CompletedTransfer",
]
