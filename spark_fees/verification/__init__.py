from spark_fees.verification.verifier import TransactionVerifier, VerificationResult, VerifiedTransfer

__all__ = ["TransactionVerifier", "VerificationResult", "VerifiedTransfer"]
