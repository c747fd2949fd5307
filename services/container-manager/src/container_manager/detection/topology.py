"""Topology analyzer: groups detector signals into candidate services.

Every directory holding its own manifest becomes one candidate; a parent
directory does not see files owned by nested candidates. Candidates are scored,
linked by the hostnames their configs reference, and turned 1:1 into
recommendations with deployment defaults.
"""

import asyncio
from dataclasses import dataclass
from pathlib import PurePosixPath
import re

import structlog

from ..auth import Actor, authorize
from ..config import Settings
from ..models import TopologyAnalysis
from ..schemas import (
    AnalysisResult,
    HealthCheckConfig,
    PatternSummary,
    ResourceLimits,
    ServiceEdge,
    ServiceGraph,
    ServiceNode,
    ServiceRecommendation,
    ServiceType,
)
from ..store import ServiceStore
from .dockerfiles import DEFAULT_PORTS, generate_dockerfile
from .patterns import PatternDetector, Signals
from .snapshot import FolderSnapshot, resolve_workspace_path

logger = structlog.get_logger()

# (service type, primary manifests, supporting manifests, languages)
LANGUAGE_TYPES: list[tuple[ServiceType, tuple[str, ...], tuple[str, ...], tuple[str, ...]]] = [
    (
        ServiceType.NODEJS,
        ("package.json",),
        ("yarn.lock", "package-lock.json", "pnpm-lock.yaml"),
        ("javascript", "typescript"),
    ),
    (
        ServiceType.PYTHON,
        ("requirements.txt", "Pipfile", "pyproject.toml", "setup.py"),
        ("poetry.lock",),
        ("python",),
    ),
    (ServiceType.GOLANG, ("go.mod",), ("go.sum",), ("go",)),
    (ServiceType.RUST, ("Cargo.toml",), ("Cargo.lock",), ("rust",)),
    (ServiceType.RUBY, ("Gemfile", "config.ru"), ("Gemfile.lock",), ("ruby",)),
    (ServiceType.JAVA, ("pom.xml", "build.gradle", "build.gradle.kts"), (), ("java", "kotlin")),
]

DOCKER_FILES = ("Dockerfile", "Containerfile")
COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
PROXY_FILES = ("nginx.conf", "haproxy.cfg", "traefik.yml", "traefik.yaml")

HEURISTIC_TYPES: dict[str, ServiceType] = {
    "javascript": ServiceType.NODEJS,
    "typescript": ServiceType.NODEJS,
    "python": ServiceType.PYTHON,
    "go": ServiceType.GOLANG,
    "rust": ServiceType.RUST,
    "ruby": ServiceType.RUBY,
    "java": ServiceType.JAVA,
    "kotlin": ServiceType.JAVA,
    "html": ServiceType.STATIC_SITE,
}

# Ordered by how strongly a framework determines how the service is served
FRAMEWORK_PRIORITY = (
    "next",
    "nestjs",
    "nuxt",
    "express",
    "fastify",
    "koa",
    "django",
    "fastapi",
    "flask",
    "rails",
    "sinatra",
    "spring-boot",
    "gin",
    "echo",
    "fiber",
    "actix-web",
    "axum",
    "rocket",
    "react",
    "vue",
    "angular",
    "svelte",
)

HTTP_FRAMEWORKS = frozenset(
    {
        "next",
        "nestjs",
        "nuxt",
        "express",
        "fastify",
        "koa",
        "django",
        "fastapi",
        "flask",
        "rails",
        "sinatra",
        "spring-boot",
        "gin",
        "echo",
        "fiber",
        "actix-web",
        "axum",
        "rocket",
    }
)
HEAVY_FRAMEWORKS = frozenset({"next", "nestjs", "nuxt", "django", "rails", "spring-boot"})

DEFAULT_RESOURCES = ResourceLimits(memory_mb=512, cpu_cores=1.0)
HEAVY_RESOURCES = ResourceLimits(memory_mb=1024, cpu_cores=2.0)

MANIFEST_CONFIDENCE = 0.6
SUPPORTING_MANIFEST_BONUS = 0.1
MAX_SUPPORTING_BONUS = 0.2
DOCKERFILE_BONUS = 0.1
FRAMEWORK_BONUS = 0.1
EXTENSION_RATIO_WEIGHT = 0.2
HEURISTIC_CAP = 0.4

NAME_INVALID_RE = re.compile(r"[^a-zA-Z0-9\-_]+")
ENV_LINE_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


@dataclass
class Candidate:
    directory: str
    name: str
    service_type: ServiceType
    confidence: float
    explicit_manifest: bool
    framework: str | None
    port: int | None
    signals: Signals
    snapshot: FolderSnapshot


def sanitize_name(raw: str, fallback: str = "service") -> str:
    name = NAME_INVALID_RE.sub("-", raw).strip("-_")[:100]
    return name or fallback


def _within(child: str, parent: str) -> bool:
    if child == parent:
        return False
    return parent == "." or child.startswith(parent.rstrip("/") + "/")


class TopologyAnalyzer:
    """Detects deployable services in a workspace folder."""

    def __init__(
        self,
        detector: PatternDetector | None = None,
        store: ServiceStore | None = None,
        settings: Settings | None = None,
    ):
        self.detector = detector or PatternDetector()
        self.store = store
        self.settings = settings

    async def analyze(
        self, actor: Actor, team_id: str, workspace_id: str, folder_path: str
    ) -> TopologyAnalysis:
        """Scan a workspace folder and store a new immutable analysis record for the team."""
        if self.store is None or self.settings is None:
            raise RuntimeError("TopologyAnalyzer.analyze requires a store and settings")
        authorize(actor, team_id, "analyze")

        root = resolve_workspace_path(self.settings.workspace_root, workspace_id, folder_path)
        log = logger.bind(team_id=team_id, workspace_id=workspace_id, folder_path=folder_path)
        log.info("topology_analysis_started")

        # Walking large trees blocks; keep it off the event loop
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(None, FolderSnapshot.from_path, root)
        result = self.analyze_snapshot(snapshot)

        analysis = await self.store.save_analysis(team_id, workspace_id, folder_path, result)
        log.info(
            "topology_analysis_completed",
            analysis_id=analysis.id,
            candidates=len(result.recommendations),
            strategy=result.deployment_strategy,
        )
        return analysis

    def analyze_snapshot(self, snapshot: FolderSnapshot) -> AnalysisResult:
        """Pure analysis of a snapshot. Same snapshot, same result."""
        overall = self.detector.detect(snapshot)
        candidates = self._candidates(snapshot)
        candidates.sort(key=lambda c: (-c.confidence, not c.explicit_manifest, c.name))
        self._dedupe_names(candidates)

        recommendations = self._recommendations(candidates)
        nodes = [
            ServiceNode(
                id=c.directory,
                name=c.name,
                type=c.service_type,
                port=c.port,
                file_path=c.directory,
                confidence=c.confidence,
            )
            for c in candidates
        ]
        edges = self._edges(candidates, overall)

        if not candidates:
            strategy = "none"
        elif len(candidates) == 1:
            strategy = "single_container"
        else:
            strategy = "multi_service"

        return AnalysisResult(
            patterns=PatternSummary(
                languages=overall.languages,
                frameworks=overall.frameworks,
                databases=overall.databases,
            ),
            graph=ServiceGraph(nodes=nodes, edges=edges),
            recommendations=recommendations,
            deployment_strategy=strategy,
        )

    # === Candidates ===

    def _candidate_dirs(self, snapshot: FolderSnapshot) -> list[str]:
        service_manifests = {m for _, primary, _, _ in LANGUAGE_TYPES for m in primary}
        service_manifests.update(DOCKER_FILES, PROXY_FILES)

        dirs: list[str] = []
        compose_only: list[str] = []
        for directory in snapshot.directories():
            names = {PurePosixPath(p).name for p in snapshot.files_in(directory)}
            if names & service_manifests:
                dirs.append(directory)
            elif names & set(COMPOSE_FILES):
                compose_only.append(directory)
            elif directory == "." and "index.html" in names:
                dirs.append(directory)

        # A compose file only orchestrates when nested services exist
        for directory in compose_only:
            if not any(_within(d, directory) for d in dirs):
                dirs.append(directory)
        return sorted(dirs)

    def _candidates(self, snapshot: FolderSnapshot) -> list[Candidate]:
        dirs = self._candidate_dirs(snapshot)
        candidates = []
        for directory in dirs:
            nested = tuple(d for d in dirs if _within(d, directory))
            scoped = snapshot.scoped(directory, exclude=nested)
            candidate = self._build_candidate(directory, scoped, heuristic=False)
            if candidate:
                candidates.append(candidate)

        if not candidates and snapshot.files:
            candidate = self._build_candidate(".", snapshot, heuristic=True)
            if candidate:
                candidates.append(candidate)
        return candidates

    def _build_candidate(
        self, directory: str, snapshot: FolderSnapshot, heuristic: bool
    ) -> Candidate | None:
        signals = self.detector.detect(snapshot)
        root_manifests = set(signals.root_manifests())
        total_sources = sum(signals.source_counts.values())

        service_type: ServiceType | None = None
        type_manifests: tuple[str, ...] = ()
        languages: tuple[str, ...] = ()

        best_count = -1
        for stype, primary, supporting, langs in LANGUAGE_TYPES:
            if root_manifests & set(primary):
                count = sum(signals.source_counts.get(lang, 0) for lang in langs)
                if count > best_count:
                    service_type, type_manifests, languages = stype, primary + supporting, langs
                    best_count = count

        if service_type is None and not heuristic:
            if root_manifests & set(DOCKER_FILES):
                service_type, type_manifests = ServiceType.CONTAINERIZED, DOCKER_FILES
            elif root_manifests & set(COMPOSE_FILES):
                service_type, type_manifests = ServiceType.COMPOSE_STACK, COMPOSE_FILES
            elif root_manifests & set(PROXY_FILES):
                service_type, type_manifests = ServiceType.PROXY, PROXY_FILES
            elif "index.html" in root_manifests:
                service_type, type_manifests, languages = (
                    ServiceType.STATIC_SITE,
                    ("index.html",),
                    ("html",),
                )

        explicit = service_type is not None
        if service_type is None:
            dominant = max(
                (lang for lang in signals.source_counts if lang in HEURISTIC_TYPES),
                key=lambda lang: (signals.source_counts[lang], lang),
                default=None,
            )
            if dominant is None:
                return None
            service_type = HEURISTIC_TYPES[dominant]
            languages = tuple(
                lang for lang, stype in HEURISTIC_TYPES.items() if stype == service_type
            )

        framework = next((fw for fw in FRAMEWORK_PRIORITY if fw in signals.frameworks), None)

        score = MANIFEST_CONFIDENCE if explicit else 0.0
        found = [m for m in type_manifests if m in root_manifests]
        score += min(MAX_SUPPORTING_BONUS, SUPPORTING_MANIFEST_BONUS * max(0, len(found) - 1))
        if service_type != ServiceType.CONTAINERIZED and root_manifests & set(DOCKER_FILES):
            score += DOCKERFILE_BONUS
        if framework:
            score += FRAMEWORK_BONUS
        if total_sources:
            matching = sum(signals.source_counts.get(lang, 0) for lang in languages)
            score += EXTENSION_RATIO_WEIGHT * matching / total_sources
        if not explicit:
            score = min(score, HEURISTIC_CAP)
        confidence = round(min(1.0, score), 3)
        if confidence <= 0:
            return None

        if service_type == ServiceType.COMPOSE_STACK:
            port = None
        elif signals.declared_ports:
            port = signals.declared_ports[0]
        else:
            port = DEFAULT_PORTS.get(service_type.value)

        raw_name = signals.declared_name or (
            PurePosixPath(directory).name if directory != "." else snapshot.name
        )
        return Candidate(
            directory=directory,
            name=sanitize_name(raw_name or "app", fallback="app"),
            service_type=service_type,
            confidence=confidence,
            explicit_manifest=explicit,
            framework=framework,
            port=port,
            signals=signals,
            snapshot=snapshot,
        )

    @staticmethod
    def _dedupe_names(candidates: list[Candidate]) -> None:
        seen: dict[str, int] = {}
        for candidate in candidates:
            count = seen.get(candidate.name, 0)
            seen[candidate.name] = count + 1
            if count:
                candidate.name = f"{candidate.name}-{count + 1}"

    # === Recommendations ===

    def _recommendations(self, candidates: list[Candidate]) -> list[ServiceRecommendation]:
        used_host_ports: set[int] = set()
        recommendations = []
        for c in candidates:
            ports: dict[str, int | None] = {}
            if c.port:
                host_port = c.port
                while host_port in used_host_ports:
                    host_port += 1
                used_host_ports.add(host_port)
                ports[str(c.port)] = host_port

            http = any(fw in HTTP_FRAMEWORKS for fw in c.signals.frameworks)
            heavy = any(fw in HEAVY_FRAMEWORKS for fw in c.signals.frameworks)

            recommendations.append(
                ServiceRecommendation(
                    name=c.name,
                    service_type=c.service_type,
                    confidence=c.confidence,
                    folder_path=c.directory,
                    explicit_manifest=c.explicit_manifest,
                    framework=c.framework,
                    ports=ports,
                    env=self._default_env(c),
                    resources=HEAVY_RESOURCES if heavy else DEFAULT_RESOURCES,
                    health_check=HealthCheckConfig(
                        enabled=http and c.port is not None,
                        type="http",
                        path="/health",
                        port=c.port,
                        interval_seconds=self._health_interval(),
                    ),
                    build_file=self._build_file(c),
                )
            )
        return recommendations

    def _health_interval(self) -> int:
        if self.settings is None:
            return HealthCheckConfig.model_fields["interval_seconds"].default
        return self.settings.health_check_interval_seconds

    @staticmethod
    def _default_env(c: Candidate) -> dict[str, str]:
        env: dict[str, str] = {}
        example = c.snapshot.read(".env.example")
        if example:
            for line in example.splitlines():
                match = ENV_LINE_RE.match(line)
                if match:
                    env[match.group(1)] = match.group(2).strip().strip("'\"")
        if c.service_type == ServiceType.NODEJS:
            env["NODE_ENV"] = "production"
        elif c.service_type == ServiceType.PYTHON:
            env["PYTHONUNBUFFERED"] = "1"
        if c.port and c.service_type not in (ServiceType.STATIC_SITE, ServiceType.PROXY):
            env["PORT"] = str(c.port)
        return dict(sorted(env.items()))

    @staticmethod
    def _build_file(c: Candidate) -> str:
        for name in DOCKER_FILES:
            existing = c.snapshot.read(name)
            if existing is not None:
                return existing
        if c.service_type == ServiceType.COMPOSE_STACK:
            return ""
        return generate_dockerfile(
            c.service_type.value,
            port=c.port,
            entry_points=c.signals.entry_points,
            framework=c.framework,
            manifests=c.signals.root_manifests(),
            name=c.signals.declared_name,
        )

    # === Edges ===

    @staticmethod
    def _edges(candidates: list[Candidate], overall: Signals) -> list[ServiceEdge]:
        aliases: dict[str, set[str]] = {}
        for c in candidates:
            names = {c.name.lower()}
            if c.directory != ".":
                names.add(PurePosixPath(c.directory).name.lower())
            aliases[c.directory] = names

        # compose service names resolve to the candidate built from their context
        compose_dirs: dict[str, str] = {}
        for service in overall.compose_services:
            if service.build_context and service.build_context in aliases:
                aliases[service.build_context].add(service.name.lower())
                compose_dirs[service.name.lower()] = service.build_context

        edges: set[tuple[str, str]] = set()
        for source in candidates:
            hosts = set(source.signals.hostnames)
            for service in overall.compose_services:
                if compose_dirs.get(service.name.lower()) == source.directory:
                    hosts.update(dep.lower() for dep in service.depends_on)
            for target in candidates:
                if target.directory != source.directory and hosts & aliases[target.directory]:
                    edges.add((source.directory, target.directory))

        return [ServiceEdge(source=s, target=t) for s, t in sorted(edges)]
