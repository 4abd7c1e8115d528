# voteguard/voting/receipts.py

import base64
import hashlib
import secrets
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives import serialization

# Ed25519 signing of vote hashes and receipt derivation

ABSTAIN_MARKER = 'ABSTAIN'
RECEIPT_LENGTH = 16


def generate_salt() -> str:
    return secrets.token_hex(16)


def compute_vote_hash(voter_id, position_id, candidate_id, timestamp, salt) -> str:
    """sha256 over voter | position | candidate (or ABSTAIN) | ISO timestamp | salt, hex."""
    parts = [voter_id, position_id, candidate_id or ABSTAIN_MARKER, timestamp.isoformat(), salt]
    return hashlib.sha256('|'.join(parts).encode()).hexdigest()


def receipt_from_hash(vote_hash: str) -> str:
    return vote_hash[:RECEIPT_LENGTH].upper()


def signing_payload(vote_hash: str, previous_hash: str = None) -> bytes:
    # The chain link is signed with the hash so it cannot be re-pointed later
    return f"{vote_hash}:{previous_hash or ''}".encode()


class VoteSigner:
    def __init__(self, private_key_pem: str = None):
        if private_key_pem:
            self.private_key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
        else:
            self.private_key = Ed25519PrivateKey.generate()
        self.public_key = self.private_key.public_key()

    def get_public_key_pem(self) -> str:
        pem = self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo)
        return pem.decode()

    def get_private_key_pem(self) -> str:
        pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption())
        return pem.decode()

    def sign(self, vote_hash: str, previous_hash: str = None) -> str:
        return base64.b64encode(self.private_key.sign(signing_payload(vote_hash, previous_hash))).decode()

    def verify(self, vote_hash: str, previous_hash: str, signature: str, public_key_pem: str = None) -> bool:
        public_key = self.public_key
        if public_key_pem:
            public_key = serialization.load_pem_public_key(public_key_pem.encode())
        try:
            public_key.verify(base64.b64decode(signature), signing_payload(vote_hash, previous_hash))
            return True
        except (InvalidSignature, ValueError):
            return False

    def check_vote(self, vote):
        """
        Re-derive a persisted vote's hash and receipt and verify its signature.

        Returns:
            list: names of the checks that failed (empty when the vote is intact).
        """
        failures = []
        recomputed = compute_vote_hash(vote.voter_id, vote.position_id, vote.candidate_id,
                                       vote.timestamp, vote.salt)
        if recomputed != vote.vote_hash:
            failures.append('vote_hash')
        if receipt_from_hash(vote.vote_hash) != vote.receipt_hash:
            failures.append('receipt_hash')
        if not self.verify(vote.vote_hash, vote.previous_hash, vote.signature):
            failures.append('signature')
        return failures


def chain_tip(votes):
    """Hash of the vote no other vote points back to, or None for an empty chain."""
    referenced = {v.previous_hash for v in votes}
    for vote in votes:
        if vote.vote_hash not in referenced:
            return vote.vote_hash
    return None


def broken_links(votes):
    """
    Votes of one voter in one election whose previous_hash does not fit a
    single linear chain. Returns their ids.
    """
    hashes = {v.vote_hash for v in votes}
    seen_links = set()
    broken = set()
    roots = [v for v in votes if v.previous_hash is None]
    for vote in votes:
        link = vote.previous_hash
        if link is not None and (link not in hashes or link == vote.vote_hash):
            broken.add(vote.id)
        elif link in seen_links:
            broken.add(vote.id)
        seen_links.add(link)
    if votes and len(roots) != 1:
        broken.update(v.id for v in (roots or votes))
    return broken
