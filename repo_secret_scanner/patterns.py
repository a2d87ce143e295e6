"""
Pattern catalog: named rules describing known secret shapes.

Rules are evaluated in declaration order; provider-specific rules come first and
generic ones last, so when matches are merged the most specific rule names the
finding. A rule may define a named group ``secret`` to narrow the reported span
to the credential itself.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Tuple

from repo_secret_scanner.config import CustomPatternSpec, ScanConfiguration
from repo_secret_scanner.errors import ConfigurationError
from repo_secret_scanner.models import Severity

logger = logging.getLogger(__name__)

SECRET_GROUP = "secret"
GENERIC_CONFIDENCE = 0.6
GENERIC_MIN_ENTROPY = 3.5


@dataclass(frozen=True)
class PatternRule:
    """A compiled detection rule."""

    name: str
    category: str
    regex: Pattern
    severity: Severity = Severity.CRITICAL
    confidence: float = 1.0
    multiline: bool = False
    min_entropy: float = 0.0
    origin: str = "builtin"
    # Literal that must appear on the start line; lets multiline rules skip most lines cheaply
    trigger: Optional[str] = None

    def span(self, match) -> Tuple[int, int]:
        """Span of the secret group if the rule defines one and it participated, else the whole match."""
        if SECRET_GROUP in self.regex.groupindex and match.group(SECRET_GROUP) is not None:
            return match.span(SECRET_GROUP)
        return match.span()

    def is_enabled(self, enabled_categories: Sequence[str]) -> bool:
        if not enabled_categories:
            return True
        wanted = {c.lower() for c in enabled_categories}
        return self.category.lower() in wanted or self.name.lower() in wanted


# ===================================================================
# DETECTION PATTERNS
# ===================================================================

class SecretPatterns:
    """Regex sources for secret detection with provider-specific rules."""

    # Cloud providers
    AWS_ACCESS_KEY_ID = r'\b(?:AKIA|ASIA|AGPA|AIDA|AROA|ANPA)[A-Z0-9]{16}\b'
    AWS_SECRET_ACCESS_KEY = (
        r'(?i)aws[_.-]?secret[_.-]?(?:access[_.-]?)?key["\']?\s*(?:[:=]|=>)\s*["\']?'
        r'(?P<secret>[A-Za-z0-9/+=]{40})(?![A-Za-z0-9/+=])'
    )
    GOOGLE_API_KEY = r'\bAIza[0-9A-Za-z_-]{35}(?![0-9A-Za-z_-])'
    GCP_SERVICE_ACCOUNT = r'"type"\s*:\s*"service_account"'
    ALIBABA_ACCESS_KEY = r'\bLTAI[a-zA-Z0-9]{12,20}\b'
    DIGITALOCEAN_TOKEN = r'\bdo[por]_v1_[a-f0-9]{64}\b'

    # Version control and package registries
    GITHUB_TOKEN = r'\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36}\b'
    GITHUB_FINE_GRAINED_TOKEN = r'\bgithub_pat_[A-Za-z0-9_]{82}\b'
    GITLAB_PAT = r'\bglpat-[a-zA-Z0-9_\-]{20}(?![a-zA-Z0-9_\-])'
    NPM_TOKEN = r'\bnpm_[a-zA-Z0-9]{36}\b'
    PYPI_TOKEN = r'\bpypi-AgEIcHlwaS5vcmc[A-Za-z0-9\-_]{50,}'

    # SaaS APIs
    SLACK_TOKEN = r'\bxox[pbaors]-[0-9]{10,13}-[0-9]{10,13}(?:-[0-9]{10,13})?-[A-Za-z0-9]{24,32}\b'
    SLACK_WEBHOOK = r'https://hooks\.slack\.com/services/T[A-Z0-9]{8,}/B[A-Z0-9]{8,}/[A-Za-z0-9]{24}'
    STRIPE_KEY = r'\b(?:sk|rk)_live_[A-Za-z0-9]{24,}\b'
    SENDGRID_KEY = r'\bSG\.[A-Za-z0-9_-]{22}\.[A-Za-z0-9_-]{43}(?![A-Za-z0-9_-])'
    TWILIO_KEY = r'\bSK[a-f0-9]{32}\b'
    MAILGUN_KEY = r'\bkey-[a-f0-9]{32}\b'
    SQUARE_ACCESS_TOKEN = r'\bsq0atp-[0-9A-Za-z\-_]{22}(?![0-9A-Za-z\-_])'
    SQUARE_SECRET = r'\bsq0csp-[0-9A-Za-z\-_]{43}(?![0-9A-Za-z\-_])'
    DISCORD_WEBHOOK = r'https://discord(?:app)?\.com/api/webhooks/[0-9]{17,19}/[A-Za-z0-9_-]{68}'
    OPENAI_API_KEY = r'\bsk-(?:proj-[A-Za-z0-9_-]{43,}|[a-zA-Z0-9]{20}T3BlbkFJ[a-zA-Z0-9]{20})'
    ANTHROPIC_API_KEY = r'\bsk-ant-(?:api|admin)0\d-[a-zA-Z0-9\-_]{80,}'
    HUGGINGFACE_TOKEN = r'\bhf_[a-zA-Z0-9]{32,}\b'
    NEW_RELIC_API_KEY = r'\bNRAK-[A-Z0-9]{27}\b'

    # Private key material
    PRIVATE_KEY_BLOCK = (
        r'-----BEGIN (?P<kind>(?:RSA |DSA |EC |OPENSSH |ENCRYPTED |PGP )?PRIVATE KEY(?: BLOCK)?)-----'
        r'[\s\S]{16,16000}?-----END (?P=kind)-----'
    )
    AGE_PRIVATE_KEY = r'AGE-SECRET-KEY-1[A-Z0-9]{58}'

    # Tokens and connection strings
    JWT_TOKEN = r'\beyJ[A-Za-z0-9_-]{10,}\.eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}'
    DATABASE_URI = (
        r'\b(?:mongodb(?:\+srv)?|postgres(?:ql)?|mysql|mariadb|redis|rediss|amqps?|mssql)://'
        r'[^:/\s"\']+:(?P<secret>[^@/\s"\']+)@[\w.-]+'
    )
    JDBC_CONNECTION_STRING = r'(?i)\b(?:jdbc|odbc):[^\s"\']*?[;?&]password=(?P<secret>[^;&"\'\s]{4,})'
    PASSWORD_IN_URL = r'\b[a-z][a-z0-9+.-]*://[^:/\s"\']+:(?P<secret>[^@/\s"\']+)@'

    # Generic secret assignments (JSON, YAML, ENV, code)
    ASSIGNMENT_SECRET = (
        r'(?i)(?<![\w.-])[\w.-]*?(?:password|passwd|pwd|passphrase|secret|token|api[_-]?key|apikey'
        r'|access[_-]?key|private[_-]?key|client[_-]?secret|credential|auth)[\w.-]*["\']?'
        r'\s*(?::=|=>|[:=])\s*[@"\'`]?(?P<secret>[A-Za-z0-9\-._~/+=!#$%^&*]{8,200})'
    )


# (name, category, regex, severity, confidence, multiline, min_entropy, trigger)
BUILTIN_RULE_DEFINITIONS = [
    ("aws-access-key", "AWS Access Key", SecretPatterns.AWS_ACCESS_KEY_ID, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("aws-secret-key", "AWS Secret Key", SecretPatterns.AWS_SECRET_ACCESS_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("google-api-key", "Google API Key", SecretPatterns.GOOGLE_API_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("gcp-service-account", "GCP Service Account", SecretPatterns.GCP_SERVICE_ACCOUNT, Severity.WARNING, 0.8, False, 0.0, None),
    ("alibaba-access-key", "Alibaba Access Key", SecretPatterns.ALIBABA_ACCESS_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("digitalocean-token", "DigitalOcean Token", SecretPatterns.DIGITALOCEAN_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("github-token", "GitHub Token", SecretPatterns.GITHUB_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("github-fine-grained-token", "GitHub Token", SecretPatterns.GITHUB_FINE_GRAINED_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("gitlab-token", "GitLab Token", SecretPatterns.GITLAB_PAT, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("npm-token", "NPM Token", SecretPatterns.NPM_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("pypi-token", "PyPI Token", SecretPatterns.PYPI_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("slack-token", "Slack Token", SecretPatterns.SLACK_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("slack-webhook", "Slack Webhook", SecretPatterns.SLACK_WEBHOOK, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("stripe-key", "Stripe Key", SecretPatterns.STRIPE_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("sendgrid-key", "SendGrid Key", SecretPatterns.SENDGRID_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("twilio-key", "Twilio Key", SecretPatterns.TWILIO_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("mailgun-key", "Mailgun Key", SecretPatterns.MAILGUN_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("square-access-token", "Square Token", SecretPatterns.SQUARE_ACCESS_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("square-secret", "Square Token", SecretPatterns.SQUARE_SECRET, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("discord-webhook", "Discord Webhook", SecretPatterns.DISCORD_WEBHOOK, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("openai-api-key", "OpenAI API Key", SecretPatterns.OPENAI_API_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("anthropic-api-key", "Anthropic API Key", SecretPatterns.ANTHROPIC_API_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("huggingface-token", "Hugging Face Token", SecretPatterns.HUGGINGFACE_TOKEN, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("new-relic-api-key", "New Relic API Key", SecretPatterns.NEW_RELIC_API_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("private-key-block", "Private Key", SecretPatterns.PRIVATE_KEY_BLOCK, Severity.CRITICAL, 1.0, True, 0.0, "-----BEGIN "),
    ("age-private-key", "Private Key", SecretPatterns.AGE_PRIVATE_KEY, Severity.CRITICAL, 1.0, False, 0.0, None),
    ("jwt", "JSON Web Token", SecretPatterns.JWT_TOKEN, Severity.WARNING, 0.9, False, 0.0, None),
    ("database-connection-string", "Database Connection String", SecretPatterns.DATABASE_URI, Severity.CRITICAL, 0.9, False, 0.0, None),
    ("jdbc-connection-string", "Database Connection String", SecretPatterns.JDBC_CONNECTION_STRING, Severity.CRITICAL, 0.9, False, 0.0, None),
    ("password-in-url", "Password in URL", SecretPatterns.PASSWORD_IN_URL, Severity.CRITICAL, 0.8, False, 0.0, None),
    ("generic-secret-assignment", "Generic Secret", SecretPatterns.ASSIGNMENT_SECRET, Severity.WARNING,
     GENERIC_CONFIDENCE, False, GENERIC_MIN_ENTROPY, None),
]


def builtin_rules() -> List[PatternRule]:
    return [
        PatternRule(
            name=name,
            category=category,
            regex=re.compile(regex),
            severity=severity,
            confidence=confidence,
            multiline=multiline,
            min_entropy=min_entropy,
            trigger=trigger,
        )
        for name, category, regex, severity, confidence, multiline, min_entropy, trigger in BUILTIN_RULE_DEFINITIONS
    ]


def compile_custom_patterns(specs: Sequence[CustomPatternSpec]) -> Tuple[List[PatternRule], List[ConfigurationError]]:
    """
    Compile user-supplied pattern specs into rules.

    Returns:
        The compiled rules and one ConfigurationError per spec that failed to compile.
        Failed specs are left out of the rules.
    """
    rules = []
    errors = []

    for spec in specs:
        if not spec.regex:
            errors.append(ConfigurationError(f"Custom pattern {spec.name} has no regex", source=spec.name))
            continue
        try:
            compiled = re.compile(spec.regex, re.MULTILINE if spec.multiline else 0)
        except re.error as e:
            errors.append(ConfigurationError(f"Invalid regex for custom pattern {spec.name}: {e}", source=spec.name))
            continue

        rules.append(PatternRule(
            name=spec.name,
            category=spec.category or spec.name,
            regex=compiled,
            severity=spec.severity,
            confidence=spec.confidence,
            multiline=spec.multiline,
            origin="custom",
        ))
        logger.debug(f"Compiled custom pattern: {spec.name}")

    return rules, errors


def build_rule_catalog(config: ScanConfiguration) -> Tuple[List[PatternRule], List[ConfigurationError]]:
    """Built-in rules followed by custom rules, restricted to the enabled categories."""
    custom_rules, errors = compile_custom_patterns(config.custom_patterns)
    rules = [
        rule for rule in builtin_rules() + custom_rules
        if rule.is_enabled(config.enabled_categories)
    ]
    return rules, errors
