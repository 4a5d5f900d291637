"""Content-risk screening for text sent to remote embedding endpoints

Upstream gateways and WAFs sometimes reject payloads that contain exploit
signatures by returning an HTML 403 page. Notes matching the skip patterns
are never sent; the signal labels explain why an isolated chunk was rejected.
"""

import re

SKIP_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("phpunit", re.compile(r"\bphpunit\b", re.IGNORECASE)),
    ("eval-stdin", re.compile(r"eval-stdin", re.IGNORECASE)),
    ("traversal", re.compile(r"\.\.(/|\\)|%2e%2e|%252e%252e", re.IGNORECASE)),
    (
        "php-exploit",
        re.compile(r"\\think\\app|invokefunction|call_user_func|pearcmd", re.IGNORECASE),
    ),
    (
        "wp-exploit",
        re.compile(r"wp-file-manager.*connector|wp-content.*plugins.*php", re.IGNORECASE),
    ),
    ("fortinet-exploit", re.compile(r"fgt_lang.*sslvpn|cmdb.*sslvpn", re.IGNORECASE)),
]

RISK_SIGNALS: list[tuple[str, re.Pattern[str]]] = [
    ("pem", re.compile(r"-----BEGIN [^-]{0,80}-----", re.IGNORECASE)),
    ("ssh-key", re.compile(r"\bssh-(?:rsa|ed25519|dss)\s+[A-Za-z0-9+/=]{80,}")),
    ("jwt", re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b")),
    ("base64", re.compile(r"[A-Za-z0-9+/]{200,}={0,2}")),
    ("phpunit", re.compile(r"\bphpunit\b", re.IGNORECASE)),
    ("sqlmap", re.compile(r"\bsqlmap\b", re.IGNORECASE)),
    ("nmap", re.compile(r"\bnmap\b", re.IGNORECASE)),
    ("metasploit", re.compile(r"\bmetasploit\b", re.IGNORECASE)),
    ("hashcat", re.compile(r"\bhashcat\b", re.IGNORECASE)),
    ("hydra", re.compile(r"\bhydra\b", re.IGNORECASE)),
    ("script-tag", re.compile(r"<\s*/?\s*script\b", re.IGNORECASE)),
    ("php-tag", re.compile(r"<\?\s*php", re.IGNORECASE)),
    ("traversal", re.compile(r"\.\.(/|\\)")),
    ("union-select", re.compile(r"\bunion\s+select\b", re.IGNORECASE)),
    ("base64_decode", re.compile(r"\bbase64_decode\b", re.IGNORECASE)),
    ("openai-key", re.compile(r"\bsk-[A-Za-z0-9]{20,}\b")),
    ("gh-token", re.compile(r"\b(?:ghp_[A-Za-z0-9]{30,}|github_pat_[A-Za-z0-9_]{20,})\b")),
    ("bearer", re.compile(r"\bBearer\s+[A-Za-z0-9._-]{30,}\b", re.IGNORECASE)),
    ("cve", re.compile(r"\bCVE-\d{4}-\d{3,7}\b", re.IGNORECASE)),
    ("curl", re.compile(r"\bcurl\b", re.IGNORECASE)),
    ("wget", re.compile(r"\bwget\b", re.IGNORECASE)),
    ("powershell", re.compile(r"\bpowershell\b", re.IGNORECASE)),
    ("cmd", re.compile(r"\bcmd\.exe\b", re.IGNORECASE)),
    ("rm-rf", re.compile(r"\brm\s+-rf\b", re.IGNORECASE)),
    ("chmod", re.compile(r"\bchmod\b", re.IGNORECASE)),
    ("chown", re.compile(r"\bchown\b", re.IGNORECASE)),
    ("etc-passwd", re.compile(r"/etc/passwd\b", re.IGNORECASE)),
    ("xss", re.compile(r"\bxss\b", re.IGNORECASE)),
    ("csrf", re.compile(r"\bcsrf\b", re.IGNORECASE)),
    ("sql-injection", re.compile(r"\bsql\s+injection\b", re.IGNORECASE)),
]


def screen_for_skip(text: str) -> list[str]:
    """Names of skip patterns found in text (non-empty means do not send)"""
    return [name for name, pattern in SKIP_PATTERNS if pattern.search(text)]


def detect_risk_signals(text: str) -> list[str]:
    return [name for name, pattern in RISK_SIGNALS if pattern.search(text)]


def format_signals_label(signals: list[str], max_signals: int = 6) -> str:
    """Short ' (a, b, c +N)' suffix for log messages"""
    if not signals:
        return ""
    clipped = ", ".join(signals[:max_signals])
    suffix = f" +{len(signals) - max_signals}" if len(signals) > max_signals else ""
    return f" ({clipped}{suffix})"
