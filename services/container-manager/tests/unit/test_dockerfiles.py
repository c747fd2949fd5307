from container_manager.detection.dockerfiles import (
    compute_build_hash,
    generate_dockerfile,
    get_base_image,
    image_tag,
)


def test_node_with_yarn_and_build_step():
    dockerfile = generate_dockerfile(
        "nodejs", port=3000, framework="next", manifests=["package.json", "yarn.lock"]
    )

    assert dockerfile.startswith("FROM node:18-alpine\n")
    assert "RUN yarn install --frozen-lockfile" in dockerfile
    assert "RUN npm run build" in dockerfile
    assert dockerfile.endswith('EXPOSE 3000\nCMD ["npm", "start"]\n')


def test_python_fastapi_command():
    dockerfile = generate_dockerfile(
        "python",
        port=8000,
        entry_points=["main.py"],
        framework="fastapi",
        manifests=["requirements.txt"],
    )

    assert "RUN pip install --no-cache-dir -r requirements.txt" in dockerfile
    assert 'CMD ["uvicorn", "main:app", "--host", "0.0.0.0", "--port", "8000"]' in dockerfile


def test_python_django_uses_manage_py():
    dockerfile = generate_dockerfile("python", port=8000, entry_points=["manage.py"])
    assert 'CMD ["python", "manage.py", "runserver", "0.0.0.0:8000"]' in dockerfile
    assert "RUN pip install --no-cache-dir ." in dockerfile


def test_rust_binary_named_after_package():
    dockerfile = generate_dockerfile("rust", name="ledger")
    assert 'CMD ["./target/release/ledger"]' in dockerfile
    assert "EXPOSE 8080" in dockerfile


def test_proxy_copies_nginx_conf():
    dockerfile = generate_dockerfile("proxy", manifests=["nginx.conf"])
    assert "COPY nginx.conf /etc/nginx/nginx.conf" in dockerfile


def test_unknown_type_uses_fallback_image():
    assert get_base_image("cobol") == "alpine:latest"
    assert 'CMD ["sh"]' in generate_dockerfile("cobol")


def test_image_tag_tracks_build_inputs():
    tag = image_tag("fas", "Shop-API", "FROM node\n", "/ws/shop")

    assert tag.startswith("fas/shop-api:")
    assert len(tag.rsplit(":", 1)[1]) == 12
    assert tag == image_tag("fas", "Shop-API", "FROM node\n", "/ws/shop")
    assert compute_build_hash("FROM node\n", "/ws/shop") != compute_build_hash(
        "FROM node:20\n", "/ws/shop"
    )
