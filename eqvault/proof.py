"""
EQVault - Proof Generator

⚠️ NOT A ZERO-KNOWLEDGE PROOF.

A "proof" here is a non-interactive hash commitment:

    proof_hash = base64(SHA-256("<claim>:<evidence id>:<timestamp ms>"))

It shows that whoever produced it held the evidence identifier at
that time. It gives no soundness or zero-knowledge guarantees: a
verifier who can guess or enumerate evidence identifiers can test
candidates, and nothing stops the holder from committing to a claim
that is false. Do not present it as cryptographically unforgeable.
Whether a real proof system is required is an open product question.
"""

import base64
import hashlib
import hmac
from datetime import datetime
from typing import Optional

from .models import ClaimType, EQMetrics, ZKProof, utcnow


def evidence_id_for_metrics(metrics: EQMetrics) -> str:
    """Opaque identifier for a metrics snapshot (hash of its canonical form)."""
    return hashlib.sha256(metrics.to_json_bytes()).hexdigest()


def commitment_hash(claim_type: ClaimType, evidence_id: str, timestamp: datetime) -> str:
    timestamp_ms = int(timestamp.timestamp() * 1000)
    data = f"{claim_type.value}:{evidence_id}:{timestamp_ms}".encode("utf-8")
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


class ProofGenerator:
    """
    Produces commitments for claims about local data.

    `verification_key` is published alongside each commitment so a
    verifier can tell which device made it (the key fingerprint, never
    the key).
    """

    def __init__(self, verification_key: str):
        self.verification_key = verification_key

    def generate(
        self,
        claim_type: ClaimType,
        evidence_id: str,
        timestamp: Optional[datetime] = None,
    ) -> ZKProof:
        timestamp = timestamp or utcnow()
        return ZKProof(
            proof_hash=commitment_hash(claim_type, evidence_id, timestamp),
            timestamp=timestamp,
            claim_type=claim_type,
            public_verification_key=self.verification_key,
        )

    def commit_to_metrics(self, claim_type: ClaimType, metrics: EQMetrics) -> ZKProof:
        return self.generate(claim_type, evidence_id_for_metrics(metrics))

    @staticmethod
    def verify(proof: ZKProof, evidence_id: str) -> bool:
        """Recompute the commitment from revealed evidence."""
        expected = commitment_hash(proof.claim_type, evidence_id, proof.timestamp)
        return hmac.compare_digest(expected, proof.proof_hash)
