import io


def test_rejects_file_that_is_not_an_image(app_client, fake_encoder):
    data = {"image": (io.BytesIO(b"not an image"), "photo.png"), "color": "green"}
    resp = app_client.post("/images/chromakey", data=data, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert "not a valid image" in resp.get_json()["detail"]
    assert fake_encoder.calls == []


def test_rejects_wrong_extension(app_client, fake_encoder):
    data = {"gif": (io.BytesIO(b"x"), "clip.txt")}
    resp = app_client.post("/gifs/explode", data=data, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "validation_error"


def test_missing_file_field(app_client):
    resp = app_client.post("/images/crop", data={"width": "1"}, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert "image" in resp.get_json()["detail"]


def test_generate_requires_valid_base64(app_client):
    assert app_client.post("/ffmpeg/generate", json={}).status_code == 400
    assert app_client.post("/ffmpeg/generate", json={"image": "%%%"}).status_code == 400
    resp = app_client.post("/ffmpeg/generate", json={"image": "aGVsbG8="})
    assert resp.status_code == 400
    assert "valid image" in resp.get_json()["detail"]


def test_file_route_rejects_unknown_category_and_traversal(app_client):
    assert app_client.get("/files/secrets/x.png").status_code == 404
    assert app_client.get("/files/image/../../etc/passwd").status_code == 404


def test_method_not_allowed(app_client):
    resp = app_client.get("/images/chromakey")
    assert resp.status_code == 405
    assert resp.get_json()["error"] == "method_not_allowed"


def test_upload_over_limit(app_client):
    config = app_client.application.config
    original = config["MAX_CONTENT_LENGTH"]
    config["MAX_CONTENT_LENGTH"] = 1024
    try:
        data = {"image": (io.BytesIO(b"x" * 4096), "big.png")}
        resp = app_client.post("/images/crop", data=data, content_type="multipart/form-data")
        assert resp.status_code == 413
        assert resp.get_json()["error"] == "file_too_large"
    finally:
        config["MAX_CONTENT_LENGTH"] = original


def test_json_body_must_be_an_object(app_client, fake_encoder):
    resp = app_client.post("/ffmpeg/generate", json=["x"])
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "validation_error"
    assert app_client.post("/ffmpeg/generate", json={"image": 5}).status_code == 400
    assert app_client.post("/storage/cleanup", json="all").status_code == 400
    assert fake_encoder.calls == []
