"""External operation providers and the local reference implementation."""

from maci.providers.base import (
    ChainService,
    KeyService,
    PollContext,
    ProcessBatchOutcome,
    ProcessingService,
    ProviderSet,
    TallyBatchOutcome,
    TallyService,
    VerificationService,
)
from maci.providers.local import (
    LocalChain,
    LocalKeyService,
    LocalProver,
    LocalVerifier,
    local_providers,
)

__all__ = [
    "ChainService",
    "KeyService",
    "LocalChain",
    "LocalKeyService",
    "LocalProver",
    "LocalVerifier",
    "PollContext",
    "ProcessBatchOutcome",
    "ProcessingService",
    "ProviderSet",
    "TallyBatchOutcome",
    "TallyService",
    "VerificationService",
    "local_providers",
]
