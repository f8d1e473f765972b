import logging

import requests
from flask import Flask, jsonify, render_template, request
from requests.exceptions import RequestException, SSLError, Timeout

from curl_parser import CurlCommandError, RequestDescriptor, parse_curl
from response_decoder import DISPLAY_LIMIT_BYTES, decode, parse_content_encodings, render

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/x-www-form-urlencoded; charset=utf-8"
# requests computes these itself
DROPPED_HEADERS = ("Host", "Content-Length", "Transfer-Encoding")

app = Flask(__name__)
app.config.update(
    REQUEST_TIMEOUT=30,
    DISPLAY_LIMIT_BYTES=DISPLAY_LIMIT_BYTES,
    VERIFY_TLS=True,
    LOG_LEVEL="INFO",
    HOST="0.0.0.0",
    PORT=7700,
)
app.config.from_prefixed_env("CURLWEB")


def build_request_kwargs(spec: RequestDescriptor) -> dict:
    """Maps a parsed curl command onto keyword arguments for requests.request()."""
    headers = spec.transport_headers()

    content_headers = spec.content_headers()
    if spec.has_body or content_headers:
        if spec.has_body and "Content-Type" not in spec.headers:
            headers["Content-Type"] = DEFAULT_CONTENT_TYPE
        headers.update(content_headers)

    for name in DROPPED_HEADERS:
        for key in [k for k in headers if k.lower() == name.lower()]:
            del headers[key]

    if spec.use_http2:
        logger.info("--http2 requested for %s; requests only speaks HTTP/1.1", spec.url)

    return {
        "method": spec.method,
        "url": spec.url,
        "headers": headers,
        "data": spec.body.encode("utf-8") if spec.has_body else None,
    }


def execute(spec: RequestDescriptor) -> dict:
    kwargs = build_request_kwargs(spec)
    limit = app.config["DISPLAY_LIMIT_BYTES"]

    with requests.request(
        **kwargs,
        verify=app.config["VERIFY_TLS"],
        timeout=app.config["REQUEST_TIMEOUT"],
        allow_redirects=False,
        stream=True,
    ) as resp:
        encodings = parse_content_encodings(resp.headers.get("Content-Encoding"))
        # content encodings are undone by response_decoder, not urllib3
        resp.raw.decode_content = False
        data = decode(resp.raw, encodings)
        rendered = render(data, limit)

        return {
            "status": resp.status_code,
            "reason": resp.reason,
            "headers": "\n".join(f"{k}: {v}" for k, v in resp.headers.items()),
            "body": rendered.text,
            "truncated": rendered.truncated,
            "size_bytes": len(data),
        }


@app.get("/")
def index():
    return render_template("index.html")


@app.post("/")
def submit():
    curl_text = request.form.get("curl_text", "")
    context = {"curl_text": curl_text}

    if not curl_text.strip():
        context["error"] = "Please enter a curl command"
        return render_template("index.html", **context)

    try:
        spec = parse_curl(curl_text)
        context["parsed"] = spec
        context["response"] = execute(spec)
    except CurlCommandError as e:
        logger.warning("Rejected curl command: %s", e)
        context["error"] = str(e)
    except RequestException as e:
        logger.warning("Request failed: %s", e)
        context["error"] = str(e)
    except Exception as e:
        logger.exception("Unexpected error while running curl command")
        context["error"] = f"Internal error: {e}"

    return render_template("index.html", **context)


@app.post("/run")
def run():
    payload = request.get_json(force=True, silent=True) or {}
    curl_cmd = payload.get("curl", "")

    try:
        spec = parse_curl(curl_cmd)
        response = execute(spec)

        return jsonify({
            "request": {
                "method": spec.method,
                "url": spec.url,
                "headers": dict(spec.headers),
                "has_body": spec.has_body,
                "use_http2": spec.use_http2,
            },
            "response": response,
        }), 200

    except CurlCommandError as e:
        logger.warning("Rejected curl command: %s", e)
        return jsonify({"error": str(e), "kind": e.kind}), 400
    except SSLError as e:
        return jsonify({"error": f"SSL error: {e}"}), 502
    except Timeout:
        return jsonify({"error": "Timeout"}), 504
    except RequestException as e:
        return jsonify({"error": f"Request error: {e}"}), 502
    except Exception as e:
        logger.exception("Unexpected error while running curl command")
        return jsonify({"error": f"Internal error: {e}"}), 500


if __name__ == "__main__":
    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app.run(host=app.config["HOST"], port=app.config["PORT"], debug=True)
