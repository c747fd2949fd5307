"""
Dockerfile generation and build hashing for detected services.

Responsibilities:
- Generate a Dockerfile for a service type when the folder does not ship one
- Compute deterministic hashes of build inputs for image tags
"""

import hashlib

BASE_IMAGES: dict[str, str] = {
    "nodejs": "node:18-alpine",
    "python": "python:3.11-alpine",
    "golang": "golang:1.21-alpine",
    "rust": "rust:1.75-alpine",
    "ruby": "ruby:3.2-alpine",
    "java": "eclipse-temurin:17-jre-alpine",
    "static_site": "nginx:alpine",
    "proxy": "nginx:alpine",
}

DEFAULT_BASE_IMAGE = "alpine:latest"

# Frontend and compiled frameworks that need `npm run build` before start
BUILD_STEP_FRAMEWORKS = frozenset({"next", "nestjs", "react", "vue", "angular", "nuxt", "svelte"})

DEFAULT_PORTS: dict[str, int] = {
    "nodejs": 3000,
    "python": 8000,
    "golang": 8080,
    "rust": 8080,
    "ruby": 3000,
    "java": 8080,
    "containerized": 8080,
    "static_site": 80,
    "proxy": 80,
}


def get_base_image(service_type: str) -> str:
    """Get the base image for a service type."""
    return BASE_IMAGES.get(service_type, DEFAULT_BASE_IMAGE)


def _python_command(entry_points: list[str], framework: str | None, port: int) -> str:
    if framework == "django" or "manage.py" in entry_points:
        return f'CMD ["python", "manage.py", "runserver", "0.0.0.0:{port}"]'
    if framework == "fastapi":
        module = "main" if "main.py" in entry_points else "app"
        return f'CMD ["uvicorn", "{module}:app", "--host", "0.0.0.0", "--port", "{port}"]'
    script = next((e for e in ("app.py", "main.py", "wsgi.py") if e in entry_points), "main.py")
    return f'CMD ["python", "{script}"]'


def generate_dockerfile(
    service_type: str,
    port: int | None = None,
    entry_points: list[str] | None = None,
    framework: str | None = None,
    manifests: list[str] | None = None,
    name: str | None = None,
) -> str:
    """
    Generate Dockerfile content for a detected service.

    Args:
        service_type: Detected service type (e.g. "nodejs")
        port: Container port to expose
        entry_points: Entry point files found in the service folder
        framework: Primary detected framework, if any
        manifests: Manifest files at the service folder root
        name: Declared package name, used for compiled binaries

    Returns:
        Complete Dockerfile content as string
    """
    entry_points = entry_points or []
    manifests = manifests or []
    port = port or DEFAULT_PORTS.get(service_type)

    lines = [f"FROM {get_base_image(service_type)}"]
    lines.append("")
    lines.append(f'LABEL fas.service_type="{service_type}"')
    lines.append("")

    if service_type == "nodejs":
        lines.append("WORKDIR /app")
        needs_build = framework in BUILD_STEP_FRAMEWORKS
        lines.append("COPY package*.json ./")
        install = "npm ci" if "package-lock.json" in manifests else "npm install"
        if "yarn.lock" in manifests:
            lines.append("COPY yarn.lock ./")
            install = "yarn install --frozen-lockfile"
        elif not needs_build:
            install += " --omit=dev"
        lines.append(f"RUN {install}")
        lines.append("COPY . .")
        if needs_build:
            lines.append("RUN npm run build")
        lines.append("ENV NODE_ENV=production")
        cmd = 'CMD ["npm", "start"]'
    elif service_type == "python":
        lines.append("WORKDIR /app")
        lines.append("ENV PYTHONUNBUFFERED=1")
        if "requirements.txt" in manifests:
            lines.append("COPY requirements.txt ./")
            lines.append("RUN pip install --no-cache-dir -r requirements.txt")
            lines.append("COPY . .")
        else:
            lines.append("COPY . .")
            lines.append("RUN pip install --no-cache-dir .")
        cmd = _python_command(entry_points, framework, port or 8000)
    elif service_type == "golang":
        lines.append("WORKDIR /src")
        lines.append("COPY go.* ./")
        lines.append("RUN go mod download")
        lines.append("COPY . .")
        lines.append("RUN CGO_ENABLED=0 go build -o /app/server .")
        cmd = 'CMD ["/app/server"]'
    elif service_type == "rust":
        lines.append("RUN apk add --no-cache musl-dev")
        lines.append("WORKDIR /src")
        lines.append("COPY . .")
        lines.append("RUN cargo build --release")
        cmd = f'CMD ["./target/release/{name or "app"}"]'
    elif service_type == "ruby":
        lines.append("RUN apk add --no-cache build-base")
        lines.append("WORKDIR /app")
        lines.append("COPY Gemfile* ./")
        lines.append("RUN bundle install")
        lines.append("COPY . .")
        if framework == "rails":
            cmd = f'CMD ["bundle", "exec", "rails", "server", "-b", "0.0.0.0", "-p", "{port}"]'
        else:
            cmd = f'CMD ["bundle", "exec", "rackup", "--host", "0.0.0.0", "-p", "{port}"]'
    elif service_type == "java":
        lines.append("WORKDIR /app")
        lines.append("COPY target/*.jar app.jar")
        cmd = 'CMD ["java", "-jar", "app.jar"]'
    elif service_type in ("static_site", "proxy"):
        if service_type == "proxy" and "nginx.conf" in manifests:
            lines.append("COPY nginx.conf /etc/nginx/nginx.conf")
        else:
            lines.append("COPY . /usr/share/nginx/html")
        cmd = 'CMD ["nginx", "-g", "daemon off;"]'
    else:
        lines.append("WORKDIR /app")
        lines.append("COPY . .")
        entry = entry_points[0] if entry_points else None
        cmd = f'CMD ["./{entry}"]' if entry else 'CMD ["sh"]'

    if port:
        lines.append("")
        lines.append(f"EXPOSE {port}")
    lines.append(cmd)

    return "\n".join(lines) + "\n"


def compute_build_hash(build_file: str, folder_path: str) -> str:
    """
    Compute deterministic hash of the build inputs.

    Returns:
        12-character lowercase hex hash
    """
    canonical = f"{folder_path}\n{build_file}"
    return hashlib.sha256(canonical.encode()).hexdigest()[:12]


def image_tag(prefix: str, service_name: str, build_file: str, folder_path: str) -> str:
    """Docker image tag for a service build (e.g. "fas/api:a1b2c3d4e5f6")."""
    return f"{prefix}/{service_name.lower()}:{compute_build_hash(build_file, folder_path)}"
