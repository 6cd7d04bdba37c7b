#!/usr/bin/env python3
"""
Pattern-based attack classification for decoy endpoints.

This module maps an inbound request (path, query string, body, headers)
to an attack type and severity by testing an ordered list of pattern
categories. The first matching category wins; a request matching both a
CRITICAL and a lower category returns whichever is checked first.

Security Considerations:
- High recall by design: a false positive only costs serving a fake page
- Pure and deterministic: no state is kept between calls
- Category order is data, so deployments can reorder without code changes
- Header values are truncated and credentials masked before storage
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .attack_types import AttackType, DetectionResult, Severity


class MatchScope(Enum):
    """
    Which part of the request a category is tested against.

    ALL: path + query + body + serialized headers
    PATH: request path only
    QUERY: query string only
    USER_AGENT: the user-agent header value
    HEADER_PRESENT: presence of any of the named headers
    """

    ALL = "all"
    PATH = "path"
    QUERY = "query"
    USER_AGENT = "user_agent"
    HEADER_PRESENT = "header_present"


@dataclass(frozen=True)
class RequestData:
    """Normalized classifier input."""

    path: str
    query: str
    body: str
    headers: Dict[str, str]

    @property
    def all_data(self) -> str:
        serialized = json.dumps(self.headers, separators=(',', ':'))
        return self.path + self.query + self.body + serialized

    @property
    def user_agent(self) -> str:
        return self.headers.get('user-agent', '')

    def scope_text(self, scope: MatchScope) -> str:
        if scope == MatchScope.PATH:
            return self.path
        if scope == MatchScope.QUERY:
            return self.query
        if scope == MatchScope.USER_AGENT:
            return self.user_agent
        return self.all_data


@dataclass(frozen=True)
class PatternCategory:
    """
    One ordered classification rule.

    A category matches when any of its patterns matches the scoped text,
    and every pattern in ``requires`` matches as well. HEADER_PRESENT
    categories match when any header in ``header_names`` is non-empty.
    """

    name: str
    attack_type: AttackType
    severity: Severity
    details: str
    patterns: Tuple[re.Pattern, ...] = ()
    scope: MatchScope = MatchScope.ALL
    requires: Tuple[re.Pattern, ...] = ()
    header_names: Tuple[str, ...] = ()

    def matches(self, request: RequestData) -> bool:
        if self.scope == MatchScope.HEADER_PRESENT:
            return any(request.headers.get(name) for name in self.header_names)

        text = request.scope_text(self.scope)
        if not any(pattern.search(text) for pattern in self.patterns):
            return False
        return all(pattern.search(text) for pattern in self.requires)

    def result_for(self, request: RequestData) -> DetectionResult:
        details = self.details.format(
            path=request.path,
            ua=request.user_agent[:50],
        )
        return DetectionResult(
            attack_type=self.attack_type,
            severity=self.severity,
            details=details,
        )


def _compile(*patterns: str) -> Tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


CRYPTOMINER_PATTERNS = _compile(
    # Known miner scripts
    r"coinhive", r"cryptoloot", r"coin-hive", r"jsecoin", r"cryptonight",
    r"monero", r"xmrig", r"mineralt", r"webminer", r"crypto-loot", r"coinimp",
    r"minero\.cc", r"webmine\.pro", r"papoto\.com", r"rocks\.io",
    r"coinlab\.biz", r"monerominer", r"deepminer", r"cryptonoter",
    r"2giga\.link", r"hashforcash", r"ppoi\.org", r"coinerra", r"minr\.pw",
    r"inwemo", r"authedmine", r"cloudcoins",
    # Pool URLs
    r"pool\.minergate", r"xmrpool", r"monerohash", r"dwarfpool", r"nanopool",
    r"supportxmr", r"hashvault",
    # WebAssembly miners
    r"\.wasm.*miner", r"miner.*\.wasm", r"cryptonight.*wasm",
    # Stratum protocol
    r"stratum\+tcp", r"stratum\+ssl", r"mining\.subscribe",
    r"mining\.authorize",
    r"hashrate", r"throttle.*miner", r"worker.*mining",
)

MALWARE_PATTERNS = _compile(
    # eval + decode chains
    r"eval\s*\(\s*base64_decode", r"eval\s*\(\s*gzinflate",
    r"eval\s*\(\s*str_rot13", r"eval\s*\(\s*gzuncompress",
    r"preg_replace\s*\(.*/e", r"assert\s*\(\s*\$_(GET|POST|REQUEST|COOKIE)",
    r"create_function\s*\(",
    # Obfuscation
    r"\\x[0-9a-f]{2}.*\\x[0-9a-f]{2}.*\\x[0-9a-f]{2}",
    r"chr\s*\(\s*\d+\s*\).*chr\s*\(\s*\d+\s*\)",
    r"fromCharCode.*fromCharCode.*fromCharCode",
    r"String\.fromCharCode\s*\(\s*\d+\s*,\s*\d+\s*,\s*\d+",
    # Redirects
    r"document\.location\s*=\s*['\"]https?://[^'\"]+['\"]",
    r"window\.location\.replace\s*\(",
    r"meta\s+http-equiv\s*=\s*[\"']refresh[\"']",
    # Keyloggers
    r"addEventListener\s*\(\s*['\"]keydown['\"]",
    r"addEventListener\s*\(\s*['\"]keypress['\"]",
    r"addEventListener\s*\(\s*['\"]keyup['\"]",
    r"onkeydown\s*=", r"onkeypress\s*=",
    # Form hijacking
    r"document\.forms\[\d+\]\.action\s*=", r"\.action\s*=\s*['\"]https?://",
    # Cookie theft
    r"document\.cookie.*=.*document\.cookie",
    r"new\s+Image\(\)\.src\s*=.*cookie", r"fetch\s*\(.*cookie",
    # Iframe injection
    r"document\.write\s*\(\s*['\"]<iframe", r"innerHTML\s*=\s*['\"]<iframe",
    r"insertAdjacentHTML.*iframe",
    # Drive-by download and clipboard hijack
    r"\.click\s*\(\s*\).*download", r"a\.download\s*=",
    r"navigator\.clipboard\.writeText",
    r"document\.execCommand\s*\(\s*['\"]copy['\"]",
    r"evil\.com", r"malware", r"trojan", r"virus",
)

WEBSHELL_PATTERNS = _compile(
    # PHP superglobals and exec family
    r"\$_(GET|POST|REQUEST|COOKIE|FILES)\s*\[",
    r"passthru\s*\(", r"shell_exec\s*\(", r"system\s*\(", r"exec\s*\(",
    r"popen\s*\(", r"proc_open\s*\(", r"pcntl_exec\s*\(",
    r"phpinfo\s*\(\s*\)",
    # Known shells
    r"c99shell", r"r57shell", r"b374k", r"wso\s*shell", r"alfa\s*shell",
    r"indoxploit", r"sadrazam", r"filesman", r"mini\s*shell", r"web\s*shell",
    r"php\s*spy", r"safe0ver", r"locus7s", r"1n73ction", r"angel.*shell",
    # ASP / JSP
    r"execute\s*\(\s*request", r"eval\s*\(\s*request", r"wscript\.shell",
    r"runtime\.getruntime\(\)\.exec", r"processbuilder",
    # Reverse shells
    r"/bin/sh\s*-i", r"/bin/bash\s*-i", r"nc\s+-e\s+/bin", r"netcat.*-e",
    r"python.*-c.*import\s+socket", r"perl.*-e.*socket", r"ruby.*-rsocket",
    r"php.*fsockopen",
)

RANSOMWARE_PATTERNS = _compile(
    r"encrypt.*files", r"decrypt.*bitcoin",
    r"your\s+files\s+have\s+been\s+encrypted", r"pay.*ransom",
    r"bitcoin.*wallet", r"\.locked$", r"\.encrypted$", r"\.crypted$",
    r"wannacry", r"petya", r"locky", r"cerber", r"cryptolocker",
    r"cryptowall", r"teslacrypt", r"gandcrab", r"ryuk", r"sodinokibi",
    r"revil", r"maze", r"conti", r"lockbit",
)

BOTNET_PATTERNS = _compile(
    r"/bot\.php", r"/gate\.php", r"/panel\.php", r"/cmd\.php",
    r"/control\.php", r"/c2/", r"/cnc/", r"/command",
    r"user-agent:\s*bot", r"x-botnet",
    r"mirai", r"gafgyt", r"bashlite", r"hajime", r"qbot", r"emotet",
    r"trickbot", r"dridex", r"zeus", r"citadel",
)

EXFILTRATION_PATTERNS = _compile(
    r"select.*from.*users.*password", r"select.*from.*accounts",
    r"select.*from.*customers", r"dump.*database",
    r"mysqldump", r"pg_dump", r"mongodump", r"exfil",
    r"data.*theft", r"steal.*data", r"extract.*credentials",
    r"harvest.*emails", r"scrape.*data",
)

CONFIG_FILE_PATTERNS = _compile(
    r"\.(env|env\.|config|cfg|ini|conf|properties|yaml|yml|json|xml|htaccess|htpasswd)",
)

VCS_PATTERNS = _compile(r"\.git|\.svn|\.hg|\.bzr")

CREDENTIAL_PATH_PATTERNS = _compile(
    r"credentials|secrets|password|passwd|shadow|id_rsa|\.pem|\.key|\.crt"
    r"|\.pfx|\.p12|aws|ssh",
)

COMMAND_INJECTION_PATTERNS = _compile(
    r"(\||;|`|\$\(|&&|\|\||>|<|wget|curl|bash|sh\s|nc\s|netcat|python|perl"
    r"|ruby|php\s*-r)",
)

SQL_INJECTION_PATTERNS = _compile(
    r"union\s+(all\s+)?select", r"select\s+.*\s+from", r"insert\s+into",
    r"update\s+.*\s+set", r"delete\s+from", r"drop\s+(table|database)",
    r"exec(\s+|\()", r"xp_", r"sp_", r"0x[0-9a-f]+", r"char\(",
    r"concat\(", r"group_concat", r"information_schema", r"load_file",
    r"into\s+(out|dump)file", r"benchmark\(", r"sleep\(",
    r"waitfor\s+delay", r"having\s+1", r"order\s+by\s+\d+",
    r"'\s*(or|and)\s*'?\d*\s*[=<>]", r"--\s*$", r"#\s*$", r"/\*", r"\*/",
)

NOSQL_INJECTION_PATTERNS = _compile(
    r"\$where", r"\$ne", r"\$gt", r"\$lt", r"\$gte", r"\$lte", r"\$regex",
    r"\$exists", r"\$in", r"\$nin", r"\$or", r"\$and", r"\$not", r"\$nor",
    r"\$elemMatch", r"\$size", r"\$type", r"\$mod", r"\$text", r"\$search",
    r"\{\s*\"\$",
)

XSS_PATTERNS = _compile(
    r"<script", r"</script", r"javascript:", r"on\w+\s*=", r"<iframe",
    r"<img[^>]+onerror", r"<svg[^>]+onload", r"<body[^>]+onload",
    r"expression\(", r"vbscript:", r"data:text/html", r"<embed", r"<object",
    r"<applet", r"<meta[^>]+http-equiv",
    r"<link[^>]+rel\s*=\s*[\"']?import",
)

PATH_TRAVERSAL_PATTERNS = _compile(
    r"\.\./", r"\.\.\\", r"\.\.%2f", r"\.\.%5c", r"%2e%2e", r"%252e",
    r"\.\.%c0%af", r"\.\.%c1%9c", r"/etc/", r"/proc/", r"/var/", r"c:\\",
    r"c%3a",
)

FILE_INCLUSION_PATTERNS = _compile(
    r"include", r"require", r"include_once", r"require_once",
    r"file_get_contents", r"fopen", r"fread", r"readfile", r"file\(",
    r"php://", r"expect://", r"zip://", r"phar://", r"data://", r"glob://",
    r"zlib://", r"rar://",
)

XXE_PATTERNS = _compile(
    r"<!ENTITY", r"<!DOCTYPE[^>]*\[", r"SYSTEM\s*[\"']", r"PUBLIC\s*[\"']",
    r"%\w+;", r"&#x?[0-9a-f]+;",
)

SSRF_PATTERNS = _compile(
    r"localhost", r"127\.0\.0\.1", r"0\.0\.0\.0", r"::1", r"169\.254\.",
    r"10\.\d", r"172\.(1[6-9]|2\d|3[01])\.", r"192\.168\.", r"file://",
    r"gopher://", r"dict://", r"ldap://", r"tftp://",
)

SSTI_PATTERNS = _compile(
    r"\{\{.*\}\}", r"\{%.*%\}", r"\$\{.*\}", r"<%.*%>", r"#\{.*\}",
    r"\[\[.*\]\]", r"@\(.*\)", r"<#.*>",
)

DESERIALIZATION_PATTERNS = _compile(
    r"O:\d+:\"", r"a:\d+:\{", r"s:\d+:\"", r"rO0AB", r"aced0005", r"H4sIA",
    r"YToyO", r"Tzo", r"php://input",
)

LDAP_INJECTION_PATTERNS = _compile(r"(\*\)|\(&|\(\||\)!|!\(|[*()\\])")

CRLF_PATTERNS = _compile(r"(%0d|%0a|%0d%0a|\r|\n|%5cr|%5cn)")

REDIRECT_PARAM_PATTERNS = _compile(
    r"(url=|redirect=|next=|goto=|return=|returnUrl=|continue=|dest="
    r"|destination=|redir=|redirect_uri=|return_to=)",
)

REDIRECT_TARGET_PATTERNS = _compile(r"(https?://|//|%2f%2f)")

PROTOTYPE_POLLUTION_PATTERNS = _compile(
    r"__proto__|constructor\[|prototype\[|\[\"__proto__\"\]|\['__proto__'\]",
)

WORDPRESS_PATTERNS = _compile(
    r"wp-admin|wp-login|wp-content|wp-includes|xmlrpc\.php|wp-config|wordpress",
)

DB_ADMIN_PATTERNS = _compile(
    r"phpmyadmin|pma|mysql|adminer|dbadmin|myadmin|phpmy|sql",
)

BACKDOOR_PATH_PATTERNS = _compile(
    r"shell|backdoor|c99|r57|webshell|b374k|wso|alfa|spy|cmd\.|eval-stdin"
    r"|phpspy|safe0ver",
)

BACKUP_PATH_PATTERNS = _compile(
    r"\.(sql|bak|backup|dump|old|orig|save|swp|tmp|temp|copy|~)$",
    r"backup|dump|export|archive",
)

DEBUG_PATH_PATTERNS = _compile(
    r"debug|test|info|status|health|phpinfo|server-status|server-info|\.php$",
)

SCANNER_UA_PATTERNS = _compile(
    r"sqlmap|nikto|nmap|masscan|zap|burp|acunetix|nessus|openvas|w3af"
    r"|dirbuster|gobuster|wfuzz|ffuf|nuclei|httpx|subfinder|amass|shodan"
    r"|censys",
)

SUSPICIOUS_PROXY_HEADERS = ('x-forwarded-host', 'x-original-url', 'x-rewrite-url')


# Highest priority first. Order is load-bearing: first match wins.
DEFAULT_CATEGORIES: Tuple[PatternCategory, ...] = (
    PatternCategory(
        'cryptominer', AttackType.CRYPTOMINER, Severity.CRITICAL,
        'Cryptominer injection attempt detected', CRYPTOMINER_PATTERNS,
    ),
    PatternCategory(
        'malware', AttackType.MALWARE_INJECTION, Severity.CRITICAL,
        'Malicious script/malware injection attempt', MALWARE_PATTERNS,
    ),
    PatternCategory(
        'webshell', AttackType.WEBSHELL_UPLOAD, Severity.CRITICAL,
        'Web shell upload/injection attempt', WEBSHELL_PATTERNS,
    ),
    PatternCategory(
        'ransomware', AttackType.RANSOMWARE, Severity.CRITICAL,
        'Ransomware indicators detected', RANSOMWARE_PATTERNS,
    ),
    PatternCategory(
        'botnet', AttackType.BOTNET_C2, Severity.CRITICAL,
        'Botnet C2 communication attempt', BOTNET_PATTERNS,
    ),
    PatternCategory(
        'exfiltration', AttackType.DATA_EXFILTRATION, Severity.CRITICAL,
        'Data exfiltration attempt', EXFILTRATION_PATTERNS,
    ),
    PatternCategory(
        'config_file', AttackType.ENV_DISCLOSURE, Severity.CRITICAL,
        'Config file access: {path}', CONFIG_FILE_PATTERNS, MatchScope.PATH,
    ),
    PatternCategory(
        'vcs_directory', AttackType.GIT_DISCLOSURE, Severity.CRITICAL,
        'VCS directory access: {path}', VCS_PATTERNS, MatchScope.PATH,
    ),
    PatternCategory(
        'credential_file', AttackType.ENV_DISCLOSURE, Severity.CRITICAL,
        'Credential file access: {path}', CREDENTIAL_PATH_PATTERNS,
        MatchScope.PATH,
    ),
    PatternCategory(
        'command_injection', AttackType.COMMAND_INJECTION, Severity.CRITICAL,
        'Command injection attempt detected', COMMAND_INJECTION_PATTERNS,
    ),
    PatternCategory(
        'sql_injection', AttackType.SQL_INJECTION, Severity.HIGH,
        'SQL injection attempt', SQL_INJECTION_PATTERNS,
    ),
    PatternCategory(
        'nosql_injection', AttackType.SQL_INJECTION, Severity.HIGH,
        'NoSQL injection attempt', NOSQL_INJECTION_PATTERNS,
    ),
    PatternCategory(
        'xss', AttackType.XSS, Severity.HIGH,
        'XSS attack attempt', XSS_PATTERNS,
    ),
    PatternCategory(
        'path_traversal', AttackType.PATH_TRAVERSAL, Severity.HIGH,
        'Path traversal attempt', PATH_TRAVERSAL_PATTERNS,
    ),
    PatternCategory(
        'file_inclusion', AttackType.PATH_TRAVERSAL, Severity.HIGH,
        'File inclusion attempt', FILE_INCLUSION_PATTERNS,
    ),
    PatternCategory(
        'xxe', AttackType.COMMAND_INJECTION, Severity.HIGH,
        'XXE attack attempt', XXE_PATTERNS,
    ),
    PatternCategory(
        'ssrf', AttackType.COMMAND_INJECTION, Severity.HIGH,
        'SSRF attempt detected', SSRF_PATTERNS,
    ),
    PatternCategory(
        'template_injection', AttackType.COMMAND_INJECTION, Severity.HIGH,
        'Template injection attempt', SSTI_PATTERNS,
    ),
    PatternCategory(
        'deserialization', AttackType.COMMAND_INJECTION, Severity.HIGH,
        'Deserialization attack attempt', DESERIALIZATION_PATTERNS,
    ),
    PatternCategory(
        'ldap_injection', AttackType.SQL_INJECTION, Severity.MEDIUM,
        'LDAP injection attempt', LDAP_INJECTION_PATTERNS, MatchScope.QUERY,
    ),
    PatternCategory(
        'crlf_injection', AttackType.COMMAND_INJECTION, Severity.MEDIUM,
        'CRLF injection attempt', CRLF_PATTERNS,
    ),
    PatternCategory(
        'proxy_headers', AttackType.SUSPICIOUS_HEADER, Severity.MEDIUM,
        'Suspicious headers detected', scope=MatchScope.HEADER_PRESENT,
        header_names=SUSPICIOUS_PROXY_HEADERS,
    ),
    PatternCategory(
        'open_redirect', AttackType.XSS, Severity.MEDIUM,
        'Open redirect attempt', REDIRECT_PARAM_PATTERNS, MatchScope.QUERY,
        requires=REDIRECT_TARGET_PATTERNS,
    ),
    PatternCategory(
        'prototype_pollution', AttackType.COMMAND_INJECTION, Severity.MEDIUM,
        'Prototype pollution attempt', PROTOTYPE_POLLUTION_PATTERNS,
    ),
    PatternCategory(
        'wordpress_scan', AttackType.BRUTE_FORCE, Severity.MEDIUM,
        'WordPress scan: {path}', WORDPRESS_PATTERNS, MatchScope.PATH,
    ),
    PatternCategory(
        'db_admin_scan', AttackType.BRUTE_FORCE, Severity.MEDIUM,
        'Database admin scan: {path}', DB_ADMIN_PATTERNS, MatchScope.PATH,
    ),
    PatternCategory(
        'backdoor_scan', AttackType.WEBSHELL_UPLOAD, Severity.HIGH,
        'Backdoor scan: {path}', BACKDOOR_PATH_PATTERNS, MatchScope.PATH,
    ),
    PatternCategory(
        'backup_scan', AttackType.DATA_EXFILTRATION, Severity.MEDIUM,
        'Backup file scan: {path}', BACKUP_PATH_PATTERNS, MatchScope.PATH,
    ),
    PatternCategory(
        'debug_endpoint', AttackType.INFO_GATHERING, Severity.LOW,
        'Debug endpoint access: {path}', DEBUG_PATH_PATTERNS, MatchScope.PATH,
    ),
    PatternCategory(
        'scanner_ua', AttackType.SUSPICIOUS_UA, Severity.LOW,
        'Scanner detected: {ua}', SCANNER_UA_PATTERNS, MatchScope.USER_AGENT,
    ),
)


class AttackClassifier:
    """
    Ordered first-match classifier.

    Usage:
        classifier = AttackClassifier()
        result = classifier.classify('/.env', '')
        # DetectionResult(ENV_DISCLOSURE, CRITICAL, 'Config file access: /.env')
    """

    def __init__(self, categories: Optional[Sequence[PatternCategory]] = None):
        """
        Initialize classifier.

        Args:
            categories: Ordered categories, highest priority first.
                Defaults to DEFAULT_CATEGORIES.

        Raises:
            ValueError: If category names are not unique
        """
        if categories is None:
            categories = DEFAULT_CATEGORIES
        self.categories: Tuple[PatternCategory, ...] = tuple(categories)

        names = [c.name for c in self.categories]
        if len(names) != len(set(names)):
            raise ValueError("Category names must be unique")

    def classify(
        self,
        path: Optional[str],
        query_string: Optional[str] = "",
        body: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> DetectionResult:
        """
        Classify a request.

        Args:
            path: Request path
            query_string: Raw query string (with or without leading '?')
            body: Request body, if any
            headers: Request headers, keys matched case-insensitively

        Returns:
            DetectionResult for the first matching category, or
            UNKNOWN/LOW when nothing matches. Never raises for bad input.
        """
        request = RequestData(
            path=path or "",
            query=query_string or "",
            body=body or "",
            headers=_normalize_headers(headers),
        )

        for category in self.categories:
            if category.matches(request):
                return category.result_for(request)

        return DetectionResult(
            attack_type=AttackType.UNKNOWN,
            severity=Severity.LOW,
            details=f"Unknown attack pattern: {request.path}",
        )

    def category_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.categories)

    def reordered(self, names: Iterable[str]) -> 'AttackClassifier':
        """
        Build a classifier with the named categories first, in the given order.

        Categories not named keep their relative order after the named ones.

        Raises:
            ValueError: If a name does not refer to a known category
        """
        by_name = {c.name: c for c in self.categories}
        front = []
        for name in names:
            if name not in by_name:
                raise ValueError(f"Unknown category: {name}")
            front.append(by_name[name])
        rest = [c for c in self.categories if c not in front]
        return AttackClassifier(front + rest)


def _normalize_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    if not headers:
        return {}
    return {
        str(name).lower(): "" if value is None else str(value)
        for name, value in headers.items()
    }


_default_classifier = AttackClassifier()


def classify(
    path: Optional[str],
    query_string: Optional[str] = "",
    body: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> DetectionResult:
    """Classify a request with the default category order."""
    return _default_classifier.classify(path, query_string, body, headers)


IMPORTANT_HEADERS = (
    'user-agent', 'accept', 'accept-language', 'accept-encoding',
    'content-type', 'content-length', 'origin', 'referer',
    'x-forwarded-for', 'x-real-ip', 'x-forwarded-host', 'x-forwarded-proto',
    'cf-connecting-ip', 'cf-ipcountry', 'cf-ray',
    'sec-ch-ua', 'sec-ch-ua-mobile', 'sec-ch-ua-platform',
    'sec-fetch-dest', 'sec-fetch-mode', 'sec-fetch-site', 'sec-fetch-user',
    'cookie', 'authorization', 'x-api-key', 'x-auth-token',
    'x-requested-with', 'x-csrf-token', 'x-xsrf-token',
    'cache-control', 'pragma', 'connection', 'upgrade-insecure-requests',
    'dnt', 'te', 'host',
)

MASKED_HEADERS = frozenset(('authorization', 'cookie', 'x-api-key', 'x-auth-token'))

MAX_HEADER_VALUE_LENGTH = 200
MASKED_PREFIX_LENGTH = 20


def extract_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """
    Keep the forensically relevant headers from a request.

    Security: credential-bearing headers are masked to a short prefix,
    everything else is truncated to MAX_HEADER_VALUE_LENGTH characters.
    """
    normalized = _normalize_headers(headers)
    result = {}
    for name in IMPORTANT_HEADERS:
        value = normalized.get(name)
        if not value:
            continue
        if name in MASKED_HEADERS:
            result[name] = value[:MASKED_PREFIX_LENGTH] + '...[MASKED]'
        else:
            result[name] = value[:MAX_HEADER_VALUE_LENGTH]
    return result
