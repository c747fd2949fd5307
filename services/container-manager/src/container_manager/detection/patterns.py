"""Pattern detector: turns a folder snapshot into raw signals.

Pure and deterministic. Every list in the output is sorted so the same snapshot
always yields the same signals.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
import json
from pathlib import PurePosixPath
import re
import tomllib
from typing import Any

import structlog
import yaml

from .snapshot import MANIFEST_FILES, FolderSnapshot

logger = structlog.get_logger()

EXTENSION_LANGUAGES: dict[str, str] = {
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".java": "java",
    ".kt": "kotlin",
    ".html": "html",
}

MANIFEST_LANGUAGES: dict[str, str] = {
    "package.json": "javascript",
    "requirements.txt": "python",
    "Pipfile": "python",
    "pyproject.toml": "python",
    "setup.py": "python",
    "go.mod": "go",
    "Cargo.toml": "rust",
    "Gemfile": "ruby",
    "pom.xml": "java",
    "build.gradle": "java",
    "build.gradle.kts": "kotlin",
}

NODE_FRAMEWORKS: dict[str, str] = {
    "next": "next",
    "react": "react",
    "express": "express",
    "fastify": "fastify",
    "vue": "vue",
    "nuxt": "nuxt",
    "koa": "koa",
    "@nestjs/core": "nestjs",
    "@angular/core": "angular",
    "svelte": "svelte",
}

NODE_DATABASES: dict[str, str] = {
    "pg": "postgresql",
    "postgres": "postgresql",
    "mysql": "mysql",
    "mysql2": "mysql",
    "mongoose": "mongodb",
    "mongodb": "mongodb",
    "redis": "redis",
    "ioredis": "redis",
}

PYTHON_MANIFESTS = frozenset({"requirements.txt", "Pipfile", "pyproject.toml"})
JVM_MANIFESTS = frozenset({"pom.xml", "build.gradle", "build.gradle.kts"})

# (manifest file names, regex over their text, framework)
TEXT_FRAMEWORKS: list[tuple[frozenset[str], re.Pattern[str], str]] = [
    (PYTHON_MANIFESTS, re.compile(r"(?im)^\W*django\b"), "django"),
    (PYTHON_MANIFESTS, re.compile(r"(?im)^\W*flask\b"), "flask"),
    (PYTHON_MANIFESTS, re.compile(r"(?im)^\W*fastapi\b"), "fastapi"),
    (frozenset({"Gemfile"}), re.compile(r"""gem\s+['"]rails['"]"""), "rails"),
    (frozenset({"Gemfile"}), re.compile(r"""gem\s+['"]sinatra['"]"""), "sinatra"),
    (JVM_MANIFESTS, re.compile(r"spring-boot"), "spring-boot"),
    (frozenset({"go.mod"}), re.compile(r"github\.com/gin-gonic/gin"), "gin"),
    (frozenset({"go.mod"}), re.compile(r"github\.com/labstack/echo"), "echo"),
    (frozenset({"go.mod"}), re.compile(r"github\.com/gofiber/fiber"), "fiber"),
    (frozenset({"Cargo.toml"}), re.compile(r"(?m)^\s*actix-web\b"), "actix-web"),
    (frozenset({"Cargo.toml"}), re.compile(r"(?m)^\s*axum\b"), "axum"),
    (frozenset({"Cargo.toml"}), re.compile(r"(?m)^\s*rocket\b"), "rocket"),
]

DATABASE_PATTERNS: dict[str, re.Pattern[str]] = {
    "postgresql": re.compile(r"\b(postgres(?:ql)?|psycopg2?|asyncpg)\b", re.IGNORECASE),
    "mysql": re.compile(r"\b(mysql|mariadb|pymysql)\b", re.IGNORECASE),
    "mongodb": re.compile(r"\b(mongo(?:db)?|pymongo|motor)\b", re.IGNORECASE),
    "redis": re.compile(r"\bredis\b", re.IGNORECASE),
}

ENTRY_POINT_FILES = (
    "server.js",
    "index.js",
    "app.js",
    "main.js",
    "server.ts",
    "src/index.ts",
    "src/main.ts",
    "main.py",
    "app.py",
    "manage.py",
    "wsgi.py",
    "main.go",
    "src/main.rs",
    "config.ru",
    "Procfile",
)

URL_HOST_RE = re.compile(
    r"\b(?:https?|postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqp|grpc|ws)://"
    r"(?:[^@/\s'\"]+@)?([A-Za-z0-9_.-]+)"
)
HOST_ASSIGN_RE = re.compile(
    r"(?m)^\s*[A-Za-z0-9_]*HOST[A-Za-z0-9_]*\s*[=:]\s*['\"]?([A-Za-z0-9_.-]+)", re.IGNORECASE
)
ENV_PORT_RE = re.compile(r"(?m)^\s*PORT\s*=\s*['\"]?(\d+)")
EXPOSE_RE = re.compile(r"(?mi)^\s*EXPOSE\s+(\d+)")

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})
MAX_PORT = 65535
COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")


@dataclass(frozen=True)
class ComposeService:
    name: str
    build_context: str | None
    depends_on: tuple[str, ...]


@dataclass(frozen=True)
class Signals:
    """Flat signal set emitted for one snapshot."""

    languages: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    databases: list[str] = field(default_factory=list)
    manifests_found: list[str] = field(default_factory=list)
    entry_points: list[str] = field(default_factory=list)
    hostnames: list[str] = field(default_factory=list)
    declared_ports: list[int] = field(default_factory=list)
    declared_name: str | None = None
    # language -> number of source files
    source_counts: dict[str, int] = field(default_factory=dict)
    compose_services: list[ComposeService] = field(default_factory=list)

    def root_manifests(self) -> list[str]:
        return [m for m in self.manifests_found if "/" not in m]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PatternDetector:
    """Scans a snapshot for languages, frameworks, databases and manifests."""

    def detect(self, snapshot: FolderSnapshot) -> Signals:
        manifests = sorted(p for p in snapshot.files if PurePosixPath(p).name in MANIFEST_FILES)
        root_names = {p for p in manifests if "/" not in p}

        source_counts: Counter[str] = Counter()
        for path in snapshot.files:
            language = EXTENSION_LANGUAGES.get(PurePosixPath(path).suffix)
            if language:
                source_counts[language] += 1

        languages = set(source_counts)
        for path in manifests:
            language = MANIFEST_LANGUAGES.get(PurePosixPath(path).name)
            if language:
                languages.add(language)

        frameworks: set[str] = set()
        databases: set[str] = set()
        declared_name: str | None = None

        for path in manifests:
            name = PurePosixPath(path).name
            text = snapshot.read(path)
            if text is None:
                continue
            if name == "package.json":
                package = _load_json(text, path)
                deps = {
                    dep
                    for key in ("dependencies", "devDependencies")
                    if isinstance(package.get(key), dict)
                    for dep in package[key]
                }
                frameworks.update(fw for dep, fw in NODE_FRAMEWORKS.items() if dep in deps)
                databases.update(db for dep, db in NODE_DATABASES.items() if dep in deps)
                if path in root_names and isinstance(package.get("name"), str):
                    declared_name = package["name"].split("/")[-1]
            for files, pattern, framework in TEXT_FRAMEWORKS:
                if name in files and pattern.search(text):
                    frameworks.add(framework)
            if path in root_names and declared_name is None:
                declared_name = _declared_name(name, text, path)

        for text in snapshot.contents.values():
            for database, pattern in DATABASE_PATTERNS.items():
                if pattern.search(text):
                    databases.add(database)

        compose_services = self._compose_services(snapshot)
        for service in compose_services:
            for database, pattern in DATABASE_PATTERNS.items():
                if pattern.search(service.name):
                    databases.add(database)

        signals = Signals(
            languages=sorted(languages),
            frameworks=sorted(frameworks),
            databases=sorted(databases),
            manifests_found=manifests,
            entry_points=self._entry_points(snapshot),
            hostnames=self._hostnames(snapshot, compose_services),
            declared_ports=self._declared_ports(snapshot),
            declared_name=declared_name,
            source_counts=dict(sorted(source_counts.items())),
            compose_services=compose_services,
        )
        logger.debug(
            "patterns_detected",
            folder=snapshot.name,
            languages=signals.languages,
            frameworks=signals.frameworks,
            manifests=len(manifests),
        )
        return signals

    def _entry_points(self, snapshot: FolderSnapshot) -> list[str]:
        present = set(snapshot.files)
        entries = [f for f in ENTRY_POINT_FILES if f in present]
        package_text = snapshot.read("package.json")
        if package_text:
            main = _load_json(package_text, "package.json").get("main")
            if isinstance(main, str) and main not in entries:
                entries.append(main)
        entries.extend(
            p for p in snapshot.files if re.fullmatch(r"cmd/[^/]+/main\.go", p) and p not in entries
        )
        return sorted(entries)

    def _hostnames(
        self, snapshot: FolderSnapshot, compose_services: list[ComposeService]
    ) -> list[str]:
        hosts: set[str] = set()
        for text in snapshot.contents.values():
            hosts.update(m.group(1).lower() for m in URL_HOST_RE.finditer(text))
            hosts.update(m.group(1).lower() for m in HOST_ASSIGN_RE.finditer(text))
        for service in compose_services:
            hosts.update(dep.lower() for dep in service.depends_on)
        return sorted(h for h in hosts if h not in LOCAL_HOSTS and not h.isdigit())

    def _declared_ports(self, snapshot: FolderSnapshot) -> list[int]:
        ports: list[int] = []
        for path in (".env", ".env.example", ".env.local"):
            text = snapshot.read(path)
            if text:
                ports.extend(int(p) for p in ENV_PORT_RE.findall(text))
        for path in ("Dockerfile", "Containerfile"):
            text = snapshot.read(path)
            if text:
                ports.extend(int(p) for p in EXPOSE_RE.findall(text))
        # keep first-seen order, drop duplicates
        return list(dict.fromkeys(p for p in ports if 0 < p <= MAX_PORT))

    def _compose_services(self, snapshot: FolderSnapshot) -> list[ComposeService]:
        for path in COMPOSE_FILES:
            text = snapshot.read(path)
            if text is None:
                continue
            try:
                document = yaml.safe_load(text) or {}
            except yaml.YAMLError as e:
                logger.warning("compose_parse_failed", path=path, error=str(e))
                return []
            services = document.get("services") if isinstance(document, dict) else None
            if not isinstance(services, dict):
                return []
            result = []
            for name, spec in sorted(services.items()):
                spec = spec if isinstance(spec, dict) else {}
                build = spec.get("build")
                context = build.get("context") if isinstance(build, dict) else build
                depends = spec.get("depends_on") or []
                if isinstance(depends, dict):
                    depends = list(depends)
                result.append(
                    ComposeService(
                        name=str(name),
                        build_context=_normalize_dir(context) if isinstance(context, str) else None,
                        depends_on=tuple(sorted(str(d) for d in depends)),
                    )
                )
            return result
        return []


def _normalize_dir(path: str) -> str:
    normalized = str(PurePosixPath(path))
    return normalized[2:] if normalized.startswith("./") else normalized


def _load_json(text: str, path: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("manifest_parse_failed", path=path, error=str(e))
        return {}
    return data if isinstance(data, dict) else {}


def _declared_name(name: str, text: str, path: str) -> str | None:
    if name in {"pyproject.toml", "Cargo.toml"}:
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            logger.warning("manifest_parse_failed", path=path, error=str(e))
            return None
        for section in (
            data.get("project"),
            data.get("package"),
            data.get("tool", {}).get("poetry"),
        ):
            if isinstance(section, dict) and isinstance(section.get("name"), str):
                return section["name"]
    if name == "go.mod":
        match = re.search(r"(?m)^module\s+(\S+)", text)
        if match:
            return match.group(1).rstrip("/").split("/")[-1]
    return None
