"""
Service Exceptions
Error hierarchy shared by the repository, resolver, reconciliation engine and ledger client
"""

from enum import Enum


class SupplyChainException(Exception):
    """Base class for every error raised by the supply-chain services"""
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class NotFound(SupplyChainException):
    """Requested record does not exist"""
    status_code = 404


class TemplateNotFound(NotFound):
    """Product template does not exist or its manufacturer is not registered"""


class DataIntegrityError(SupplyChainException):
    """A stored record references data that does not exist"""
    status_code = 500


class ValidationError(SupplyChainException):
    """Request data failed validation"""
    status_code = 400


class DuplicateBatchNumber(ValidationError):
    """Batch number already used by this manufacturer"""
    status_code = 409


class DuplicateName(ValidationError):
    """Name already used by this manufacturer"""
    status_code = 409


class InsufficientBalance(ValidationError):
    """Ledger balance is lower than the requested quantity"""
    status_code = 400


class Conflict(SupplyChainException):
    """Operation conflicts with the current state of a record"""
    status_code = 409


class AlreadyMinted(Conflict):
    """Batch already has a ledger token"""


class CycleDetected(SupplyChainException):
    """Component graph loops back to a batch already on the current path"""
    status_code = 409

    def __init__(self, token_id, path=None):
        self.token_id = token_id
        self.path = list(path or [])
        chain = ' -> '.join(str(t) for t in self.path + [token_id])
        super().__init__(f"Composition cycle detected at token {token_id} ({chain})")


class OperationCancelled(SupplyChainException):
    """Operation was cancelled or timed out before completion"""
    status_code = 408


class LedgerErrorKind(Enum):
    REJECTED = 'rejected'
    SIGNER_REJECTED = 'signer_rejected'
    INSUFFICIENT_FUNDS = 'insufficient_funds'
    UNDERPRICED = 'underpriced'
    NETWORK = 'network'
    INVALID_REQUEST = 'invalid_request'


_LEDGER_STATUS = {
    LedgerErrorKind.REJECTED: 502,
    LedgerErrorKind.SIGNER_REJECTED: 403,
    LedgerErrorKind.INSUFFICIENT_FUNDS: 402,
    LedgerErrorKind.UNDERPRICED: 502,
    LedgerErrorKind.NETWORK: 503,
    LedgerErrorKind.INVALID_REQUEST: 400,
}


class LedgerError(SupplyChainException):
    """Ledger call failed"""

    def __init__(self, kind, message=None, tx_hash=None):
        self.kind = kind
        self.tx_hash = tx_hash
        self.status_code = _LEDGER_STATUS.get(kind, 502)
        super().__init__(message or f"Ledger error: {kind.value}")


class LedgerRejected(LedgerError):
    """Ledger rejected the transaction"""

    def __init__(self, message=None, tx_hash=None):
        super().__init__(LedgerErrorKind.REJECTED, message, tx_hash)


class MintFailed(SupplyChainException):
    """Mint with component consumption did not complete"""
    status_code = 502

    def __init__(self, stage, cause, component_token_id=None, burns=None,
                 token_id=None, tx_hash=None):
        self.stage = stage
        self.cause = cause
        self.component_token_id = component_token_id
        self.burns = list(burns or [])
        self.token_id = token_id
        self.tx_hash = tx_hash
        detail = f"Mint failed during {stage}"
        if component_token_id is not None:
            detail += f" (component token {component_token_id})"
        super().__init__(f"{detail}: {cause}")

    def to_dict(self):
        return {
            'stage': self.stage,
            'component_token_id': self.component_token_id,
            'burns_executed': self.burns,
            'token_id': self.token_id,
            'tx_hash': self.tx_hash,
            'cause_tx_hash': getattr(self.cause, 'tx_hash', None),
        }
