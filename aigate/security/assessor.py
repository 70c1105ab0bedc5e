"""
AIGate - Security Assessment

Scores request risk from network and identity signals.

The score is the sum of independent contributions, each capped at its own
ceiling, with the total clamped to [0, 100]:

    IP reputation        0-30
    User-agent anomaly   0-25
    Header anomaly       +5 per proxy header, +10 for a non-standard method
    Behaviour            +10 when unauthenticated

assess() is a pure function of its inputs.
"""

import ipaddress
import re
from typing import Iterable, List, Optional

from ..core.config import get_blocked_networks
from ..core.models import (
    AuditLevel,
    EncryptionLevel,
    Identity,
    Organization,
    RequestMeta,
    SecurityContext,
)

MAX_IP_SCORE = 30
MAX_USER_AGENT_SCORE = 25
MAX_RISK_SCORE = 100

APPROVAL_THRESHOLD = 80
DETAILED_AUDIT_THRESHOLD = 50
ENHANCED_ENCRYPTION_THRESHOLD = 70

AUTOMATION_TOOL_PATTERN = re.compile(
    r"curl|wget|python-requests|httpie|postman|axios|go-http-client|java/|libwww",
    re.IGNORECASE,
)
BOT_PATTERN = re.compile(r"bot|crawler|spider|scraper|headless", re.IGNORECASE)

MIN_USER_AGENT_LENGTH = 5
MAX_USER_AGENT_LENGTH = 500

PROXY_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "via",
    "forwarded",
    "x-originating-ip",
    "x-forwarded-host",
    "x-cluster-client-ip",
)

STANDARD_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


class SecurityAssessor:
    """
    Computes a SecurityContext for one inbound request.

    Args:
        blocked_networks: CIDRs treated as bad reputation. Defaults to
            BLOCKED_IP_NETWORKS from the environment.
    """

    def __init__(self, blocked_networks: Optional[Iterable[str]] = None):
        if blocked_networks is None:
            blocked_networks = get_blocked_networks()
        self._blocked = [
            ipaddress.ip_network(cidr, strict=False) for cidr in blocked_networks
        ]

    def assess(
        self,
        request_meta: RequestMeta,
        identity: Optional[Identity],
        organization: Optional[Organization] = None,
    ) -> SecurityContext:
        is_authenticated = bool(identity and identity.is_authenticated)

        score = (
            self.score_ip(request_meta.ip)
            + self.score_user_agent(request_meta.user_agent)
            + self.score_headers(request_meta.headers, request_meta.method)
            + self.score_behaviour(is_authenticated)
        )
        score = max(0, min(MAX_RISK_SCORE, score))

        return SecurityContext(
            risk_score=score,
            audit_level=self.audit_level_for(score, organization is not None),
            encryption_level=(
                EncryptionLevel.ENHANCED
                if score > ENHANCED_ENCRYPTION_THRESHOLD
                else EncryptionLevel.STANDARD
            ),
            compliance_requirements=frozenset(
                self.compliance_requirements(score, organization)
            ),
        )

    # ============================================================
    # Signal contributions
    # ============================================================

    def score_ip(self, ip: Optional[str]) -> int:
        if not ip:
            return 10
        try:
            address = ipaddress.ip_address(ip.strip())
        except ValueError:
            return 20

        score = 0
        if any(address in network for network in self._blocked):
            score += 30
        elif address.is_reserved or address.is_unspecified or address.is_multicast:
            score += 15
        return min(MAX_IP_SCORE, score)

    def score_user_agent(self, user_agent: Optional[str]) -> int:
        if not user_agent or not user_agent.strip():
            return 20

        score = 0
        if AUTOMATION_TOOL_PATTERN.search(user_agent):
            score += 15
        if BOT_PATTERN.search(user_agent):
            score += 25
        if not MIN_USER_AGENT_LENGTH <= len(user_agent) <= MAX_USER_AGENT_LENGTH:
            score += 10
        return min(MAX_USER_AGENT_SCORE, score)

    def score_headers(self, headers: Optional[dict], method: str = "POST") -> int:
        names = {name.lower() for name in (headers or {})}
        score = 5 * sum(1 for header in PROXY_HEADERS if header in names)
        if (method or "").upper() not in STANDARD_METHODS:
            score += 10
        return score

    @staticmethod
    def score_behaviour(is_authenticated: bool) -> int:
        return 0 if is_authenticated else 10

    # ============================================================
    # Derived levels
    # ============================================================

    @staticmethod
    def audit_level_for(risk_score: int, has_organization: bool) -> AuditLevel:
        if risk_score > APPROVAL_THRESHOLD:
            return AuditLevel.COMPREHENSIVE
        if has_organization or risk_score > DETAILED_AUDIT_THRESHOLD:
            return AuditLevel.DETAILED
        return AuditLevel.BASIC

    @staticmethod
    def compliance_requirements(
        risk_score: int,
        organization: Optional[Organization],
    ) -> List[str]:
        requirements: List[str] = []
        if organization is not None:
            requirements.extend(sorted(organization.compliance))
            if "soc2" not in organization.compliance:
                requirements.append("soc2")
        if risk_score > APPROVAL_THRESHOLD:
            requirements.append("manual-review")
        return requirements

