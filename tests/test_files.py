def test_written_file_appears_in_tree(client):
    resp = client.post("/api/project-file", json={"path": "a/b.txt", "content": "hello"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "path": "a/b.txt"}

    tree = client.get("/api/file-tree").json()
    [node] = tree["root"]
    assert node["path"] == "a/b.txt"
    assert node["name"] == "b.txt"
    assert node["type"] == "file"


def test_rewriting_a_path_does_not_duplicate_the_node(client):
    client.post("/api/project-file", json={"path": "a/b.txt", "content": "hello"})
    client.post("/api/project-file", json={"path": "a/b.txt", "content": "hello again"})

    tree = client.get("/api/file-tree").json()
    assert [node["path"] for node in tree["root"]] == ["a/b.txt"]
    assert client.get("/api/project-file", params={"path": "a/b.txt"}).json()["content"] == "hello again"


def test_parent_folder_is_not_required(client):
    client.post("/api/project-file", json={"path": "deep/nested/c.py", "content": ""})

    paths = [node["path"] for node in client.get("/api/file-tree").json()["root"]]
    assert paths == ["deep/nested/c.py"]


def test_empty_tree(client):
    assert client.get("/api/file-tree").json() == {"root": []}


def test_empty_content_is_valid(client):
    resp = client.post("/api/project-file", json={"path": "empty.txt", "content": ""})

    assert resp.status_code == 200
    assert client.get("/api/project-file", params={"path": "empty.txt"}).json() == {"path": "empty.txt", "content": ""}


def test_missing_path_or_non_string_content_is_400(client, kv):
    assert client.post("/api/project-file", json={"content": "x"}).status_code == 400
    assert client.post("/api/project-file", json={"path": "a.txt"}).status_code == 400
    assert client.post("/api/project-file", json={"path": "a.txt", "content": 5}).status_code == 400
    assert kv.data == {}


def test_tree_failure_does_not_fail_the_write(client, gateway, diagnostics, monkeypatch):
    async def _broken_tree(path):
        raise RuntimeError("tree index unavailable")

    monkeypatch.setattr(gateway, "_upsert_tree_node", _broken_tree)

    resp = client.post("/api/project-file", json={"path": "a.txt", "content": "x", "editor": "vim"})

    assert resp.status_code == 200
    assert "files.tree" in diagnostics.sources()
    [log] = client.get("/api/logs", params={"kind": "file-edit"}).json()
    assert '"editor": "vim"' in log["request_summary"]


def test_unknown_file_is_404(client):
    assert client.get("/api/project-file", params={"path": "nope"}).status_code == 404


def test_failed_content_write_is_still_logged(client, kv, diagnostics, monkeypatch):
    async def _broken_put(key, value):
        raise ConnectionError("kv unavailable")

    monkeypatch.setattr(kv, "put", _broken_put)

    resp = client.post("/api/project-file", json={"path": "a.txt", "content": "x"})

    assert resp.status_code == 500
    assert "files.write" in diagnostics.sources()
    [log] = client.get("/api/logs", params={"kind": "file-edit"}).json()
    assert '"stored": false' in log["response_summary"]
    assert '"path": "a.txt"' in log["request_summary"]
