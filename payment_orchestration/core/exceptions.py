"""Exception hierarchy for payment orchestration."""
from typing import Optional


class PaymentOrchestrationError(Exception):
    """Base exception for payment orchestration errors."""

    error_code: str = "payment_orchestration_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        """
        Initialize error.

        Args:
            message: Human readable error message
            error_code: Machine readable code, defaults to the class code
        """
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class ConfigurationError(PaymentOrchestrationError):
    """Raised when a tenant or provider is not configured for an operation."""

    error_code = "provider_not_configured"


class ProviderNotFoundError(ConfigurationError):
    """Raised when a provider name is not registered."""

    error_code = "provider_not_found"


class UnsupportedCapabilityError(PaymentOrchestrationError):
    """Raised when an optional provider operation is not supported."""

    error_code = "capability_unsupported"


class ProviderTransportError(PaymentOrchestrationError):
    """
    Raised by adapters for network, auth or malformed-response failures.

    Business declines are never raised; they come back as unsuccessful results.
    """

    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        provider: str,
        error_code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, error_code)
        self.provider = provider
        self.original_error = original_error


class LedgerError(PaymentOrchestrationError):
    """Base exception for transaction ledger errors."""

    error_code = "ledger_error"


class TransactionNotFoundError(LedgerError):
    """Raised when a transaction id does not exist."""

    error_code = "transaction_not_found"


class InvalidStatusTransitionError(LedgerError):
    """Raised when a status change is not allowed by the lifecycle."""

    error_code = "invalid_transaction_state"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move transaction from '{current}' to '{target}'")
        self.current = current
        self.target = target


class ContractError(PaymentOrchestrationError):
    """Base exception for recurring contract errors."""

    error_code = "contract_error"


class ContractNotFoundError(ContractError):
    """Raised when a recurring contract does not exist."""

    error_code = "contract_not_found"


class ContractStateError(ContractError):
    """Raised when a contract is not in a state that allows the operation."""

    error_code = "contract_inactive"


class CommissionError(PaymentOrchestrationError):
    """Raised for invalid commission inputs."""

    error_code = "invalid_commission"


class WebhookError(PaymentOrchestrationError):
    """Raised when a webhook cannot be verified or parsed."""

    error_code = "invalid_webhook"
