"""Recall-biased keyword extraction for store queries.

Keywords only seed a ``contains`` filter that is ranked afterwards, so extraction
prefers too many terms over too few: vocabulary hits from either list, plus every
remaining token of three or more characters.
"""

import re
from typing import List, Tuple

TECH_TERMS: Tuple[str, ...] = (
    "SF",
    "Snowflake",
    "KMDF",
    "API",
    "Database",
    "DB",
    "Redis",
    "Kafka",
    "AWS",
    "S3",
    "Lambda",
    "EC2",
    "RDS",
    "Docker",
    "Kubernetes",
    "K8s",
    "Jenkins",
    "Git",
    "GitHub",
    "Airflow",
    "Spark",
    "Elasticsearch",
    "Grafana",
    "Prometheus",
    "DataDog",
    "Nginx",
    "Apache",
    "MongoDB",
)

ISSUE_TERMS: Tuple[str, ...] = (
    # Korean: delay, error, error, outage, failure, interruption, slow, timeout,
    # connection, access, login, permission, deploy, update, install
    "지연",
    "오류",
    "에러",
    "장애",
    "실패",
    "중단",
    "느림",
    "타임아웃",
    "연결",
    "접속",
    "로그인",
    "권한",
    "배포",
    "업데이트",
    "설치",
    "latency",
    "error",
    "outage",
    "failure",
    "timeout",
    "slow",
    "connection",
    "login",
    "permission",
    "deploy",
    "update",
    "install",
)

MIN_TOKEN_LENGTH = 3

_TOKEN_RE = re.compile(r"[\w.+-]+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens with surrounding punctuation removed."""
    return [tok.strip(".-+") for tok in _TOKEN_RE.findall(text.lower()) if tok.strip(".-+")]


def _vocabulary_hits(token: str, vocabulary: Tuple[str, ...]) -> List[str]:
    hits = []
    for term in vocabulary:
        lowered = term.lower()
        # short latin terms like "db" or "s3" only match whole tokens
        substring_ok = len(lowered) >= MIN_TOKEN_LENGTH or not lowered.isascii()
        if token == lowered or (substring_ok and lowered in token):
            hits.append(term)
    return hits


def extract_keywords(query: str) -> List[str]:
    """Extract de-duplicated keywords from `query`, vocabulary hits first."""
    tokens = tokenize(query)
    found: List[str] = []
    for vocabulary in (TECH_TERMS, ISSUE_TERMS):
        for token in tokens:
            found.extend(_vocabulary_hits(token, vocabulary))
    lowered = {k.lower() for k in found}
    for token in tokens:
        if len(token) >= MIN_TOKEN_LENGTH and token not in lowered:
            found.append(token)
            lowered.add(token)
    return list(dict.fromkeys(found))
