import logging
import re
from dataclasses import dataclass, field
from urllib.parse import quote

from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})

DATA_FLAGS = frozenset({"-d", "--data", "--data-raw", "--data-binary"})
IGNORED_FLAGS = frozenset({"--compressed", "-s", "--silent", "-L", "--location", "-k", "--insecure"})
FORM_FLAGS = frozenset({"-F", "--form"})

_LINE_CONTINUATION = re.compile(r"\\\r?\n")


class CurlCommandError(ValueError):
    """Base for everything the parser refuses."""

    kind = "invalid_command"


class ParseError(CurlCommandError):
    kind = "parse_error"


class EmptyInputError(ParseError):
    kind = "empty_input"


class MissingValueError(ParseError):
    kind = "missing_value"


class MalformedHeaderError(ParseError):
    kind = "malformed_header"


class MissingUrlError(ParseError):
    kind = "missing_url"


class UnsupportedMethodError(ParseError):
    kind = "unsupported_method"


class UnsupportedFeatureError(CurlCommandError):
    """The flag is understood but deliberately not implemented (multipart)."""

    kind = "unsupported_feature"


class FrozenHeaders(CaseInsensitiveDict):
    """Read-only CaseInsensitiveDict. `copy()` returns a regular, writable one."""

    def __init__(self, data=None, **kwargs):
        super().__init__(data, **kwargs)
        self._frozen = True

    def __setitem__(self, key, value):
        if getattr(self, "_frozen", False):
            raise TypeError("request headers are read-only")
        super().__setitem__(key, value)

    def __delitem__(self, key):
        raise TypeError("request headers are read-only")


@dataclass(frozen=True)
class RequestDescriptor:
    method: str
    url: str
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: str = ""
    use_http2: bool = False

    def __post_init__(self):
        # detach from the caller's mapping so the descriptor cannot change later
        object.__setattr__(self, "headers", FrozenHeaders(self.headers))

    @property
    def has_body(self) -> bool:
        return bool(self.body)

    def transport_headers(self) -> dict:
        return {k: v for k, v in self.headers.items() if not _is_content_header(k)}

    def content_headers(self) -> dict:
        return {k: v for k, v in self.headers.items() if _is_content_header(k)}

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "body": self.body,
            "use_http2": self.use_http2,
        }


def _is_content_header(name: str) -> bool:
    return name.lower().startswith("content-")


def tokenize(text: str) -> list:
    """
    Splits a command line into shell-style words (no shell is started).

    Single quotes keep everything literal, inside double quotes a backslash
    escapes the next character. An unterminated quote simply runs to the end
    of the input.
    """
    text = _LINE_CONTINUATION.sub(" ", text)

    tokens = []
    current = []
    in_single = False
    in_double = False
    # a quoted empty string still counts as a word
    quoted = False

    i = 0
    while i < len(text):
        c = text[i]

        if c == "\\" and in_double and i + 1 < len(text):
            current.append(text[i + 1])
            i += 2
            continue

        if c == "'" and not in_double:
            in_single = not in_single
            quoted = True
        elif c == '"' and not in_single:
            in_double = not in_double
            quoted = True
        elif c.isspace() and not in_single and not in_double:
            if current or quoted:
                tokens.append("".join(current))
                current = []
                quoted = False
        else:
            current.append(c)

        i += 1

    if current or quoted:
        tokens.append("".join(current))

    return tokens


def unquote_once(text: str) -> str:
    # strips exactly one layer of matching quotes around the whole value
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def encode_data_urlencode(text: str) -> str:
    text = unquote_once(text)
    if "=" in text:
        name, value = text.split("=", 1)
        return name + "=" + quote(value, safe="")
    return quote(text, safe="")


class CurlParser:
    """
    Turns a `curl ...` command line into a RequestDescriptor.

    Understood:
      -X / --request METHOD
      -H / --header "Name: value"
      -d / --data / --data-raw / --data-binary
      --data-urlencode name=value
      --url URL
      --http2
      --compressed, -s, -L, -k (accepted, no effect)
    -F / --form is refused with UnsupportedFeatureError; any other flag is skipped.
    """

    def __init__(self, supported_methods=SUPPORTED_METHODS):
        self.supported_methods = frozenset(m.upper() for m in supported_methods)

    def parse(self, curl_text: str) -> RequestDescriptor:
        if curl_text is None:
            raise EmptyInputError("Empty curl command")
        if not isinstance(curl_text, str):
            raise ParseError(f"curl command must be a string, got {type(curl_text).__name__}")
        if not curl_text.strip():
            raise EmptyInputError("Empty curl command")

        tokens = tokenize(curl_text)
        if tokens and tokens[0].lower() == "curl":
            tokens = tokens[1:]

        method = None
        url = None
        headers = CaseInsensitiveDict()
        data_parts = []
        use_http2 = False

        i = 0
        while i < len(tokens):
            t = tokens[i]

            def take_next():
                nonlocal i
                i += 1
                if i >= len(tokens):
                    raise MissingValueError(f"Expected a value after {t}")
                return tokens[i]

            if t in ("-X", "--request"):
                method = take_next()
            elif t in ("-H", "--header"):
                h = take_next()
                if h.find(":") <= 0:
                    raise MalformedHeaderError(f"Invalid header: {h}")
                name, val = h.split(":", 1)
                # CaseInsensitiveDict keeps the casing of the last write
                headers[name.strip()] = val.strip()
            elif t in DATA_FLAGS:
                data_parts.append(unquote_once(take_next()))
            elif t == "--data-urlencode":
                data_parts.append(encode_data_urlencode(take_next()))
            elif t == "--url":
                url = take_next()
            elif not t.startswith("-"):
                if not url:
                    url = t
            elif t in IGNORED_FLAGS:
                pass
            elif t in FORM_FLAGS:
                raise UnsupportedFeatureError("multipart/form-data (-F/--form) is not supported")
            elif t == "--http2":
                use_http2 = True
            else:
                logger.debug("Ignoring unknown curl flag %s", t)

            i += 1

        if not url or not url.strip():
            raise MissingUrlError("No URL found in curl command")

        body = "&".join(data_parts)

        if method is None or not method.strip():
            method = "POST" if data_parts else "GET"

        method = method.upper()
        if method not in self.supported_methods:
            raise UnsupportedMethodError(f"Unsupported HTTP method: {method}")

        logger.debug("Parsed curl command: %s %s", method, url)

        return RequestDescriptor(
            method=method,
            url=url,
            headers=headers,
            body=body,
            use_http2=use_http2,
        )


_default_parser = CurlParser()


def parse_curl(curl_cmd: str) -> RequestDescriptor:
    return _default_parser.parse(curl_cmd)
