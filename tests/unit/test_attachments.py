"""Tests for locating and encoding externalized attachments."""

import base64
from pathlib import Path

import pytest

from emlx_converter import attachments
from emlx_converter.errors import AttachmentUnresolvable, UnsupportedEncoding
from emlx_converter.readers.mime import BodyLine, Headers, NodeStart

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"


def _attachment_dir(tmp_path: Path, position: str = "2") -> Path:
    directory = tmp_path / "Mailbox" / "Attachments" / "123456" / position
    directory.mkdir(parents=True)
    return directory


def test_attachments_directory_sits_next_to_messages(tmp_path: Path) -> None:
    container = tmp_path / "Mailbox" / "Messages" / "123456.partial.emlx"

    assert attachments.attachments_directory(container) == (
        tmp_path / "Mailbox" / "Attachments" / "123456"
    )


def test_resolver_uses_dot_joined_position(tmp_path: Path) -> None:
    resolver = attachments.AttachmentResolver(tmp_path / "Attachments" / "1")

    assert resolver.directory_for((1, 2, 3)) == tmp_path / "Attachments" / "1" / "1.2.3"


def test_filename_from_directory_ignores_dot_files(tmp_path: Path) -> None:
    directory = _attachment_dir(tmp_path)
    (directory / ".DS_Store").write_bytes(b"\x00")
    (directory / "Mail-Anhang.jpeg").write_bytes(b"jpeg")

    assert attachments.filename_from_directory(directory) == "Mail-Anhang.jpeg"


def test_filename_from_directory_needs_exactly_one_file(tmp_path: Path) -> None:
    directory = _attachment_dir(tmp_path)
    (directory / "one.txt").write_text("1")
    (directory / "two.txt").write_text("2")

    assert attachments.filename_from_directory(directory) is None
    assert attachments.filename_from_directory(tmp_path / "missing") is None


def test_resolve_prefers_declared_filename(tmp_path: Path) -> None:
    directory = _attachment_dir(tmp_path)
    (directory / "report.pdf").write_bytes(b"%PDF-1.4")
    resolver = attachments.AttachmentResolver(directory.parent)
    headers = Headers.parse([b'Content-Disposition: attachment; filename="report.pdf"'])

    assert resolver.candidates(headers, (2,)) == ["report.pdf", "report.pdf"]
    assert resolver.resolve(headers, (2,)) == b"%PDF-1.4"


def test_resolve_falls_back_to_directory_content(tmp_path: Path) -> None:
    directory = _attachment_dir(tmp_path)
    (directory / "Mail Attachment.png").write_bytes(PNG_SIGNATURE)
    resolver = attachments.AttachmentResolver(directory.parent)
    headers = Headers.parse([b"Content-Disposition: attachment; filename=renamed.png"])

    assert resolver.resolve(headers, (2,)) == PNG_SIGNATURE


def test_resolve_reports_all_candidates(tmp_path: Path) -> None:
    directory = _attachment_dir(tmp_path)
    (directory / "a.txt").write_text("a")
    (directory / "b.txt").write_text("b")
    resolver = attachments.AttachmentResolver(directory.parent)
    headers = Headers.parse([b"Content-Type: text/plain; name=missing.txt"])

    with pytest.raises(AttachmentUnresolvable) as excinfo:
        resolver.resolve(headers, (2,))

    assert str(excinfo.value) == "Could not get attachment file (tried missing.txt)"
    assert excinfo.value.candidates == ("missing.txt",)


def test_resolve_refuses_names_with_path_components(tmp_path: Path) -> None:
    directory = _attachment_dir(tmp_path)
    (tmp_path / "secret.txt").write_text("secret")
    resolver = attachments.AttachmentResolver(directory.parent)
    headers = Headers.parse([b'Content-Disposition: attachment; filename="../../../../secret.txt"'])

    with pytest.raises(AttachmentUnresolvable):
        resolver.resolve(headers, (2,))


def test_encode_base64_wraps_at_76_columns() -> None:
    data = bytes(range(256))

    lines = attachments.encode_body(data, "base64")

    assert all(len(line) <= attachments.ENCODED_LINE_LENGTH for line in lines)
    assert all(len(line) == 76 for line in lines[:-1])
    assert base64.b64decode(b"".join(lines)) == data


def test_encode_base64_png_signature() -> None:
    lines = attachments.encode_body(PNG_SIGNATURE + b"\x00" * 17, "Base64")

    assert lines[0].startswith(b"iVBORw0KGgoAAAANSUhE")


def test_encode_quoted_printable() -> None:
    text = ("Mit glücklichen Grüßen " * 6).encode("utf-8")

    lines = attachments.encode_body(text, "quoted-printable")

    assert b"gl=C3=BCcklichen" in b"".join(lines)
    assert all(len(line) <= attachments.ENCODED_LINE_LENGTH for line in lines)


@pytest.mark.parametrize("encoding", [None, "7bit", "8bit", "BINARY"])
def test_pass_through_encodings_split_lines(encoding: str | None) -> None:
    assert attachments.encode_body(b"one\ntwo\r\nthree", encoding) == [b"one", b"two", b"three"]


def test_unknown_encoding_is_rejected() -> None:
    with pytest.raises(UnsupportedEncoding, match="x-unknown"):
        attachments.encode_body(b"data", "x-unknown")


def test_interceptor_substitutes_and_drops_placeholder_header(tmp_path: Path) -> None:
    directory = _attachment_dir(tmp_path)
    (directory / "note.txt").write_bytes("glücklichen\n".encode("utf-8"))
    interceptor = attachments.PlaceholderInterceptor(
        attachments.AttachmentResolver(directory.parent)
    )
    node = NodeStart(
        path=(2,),
        headers=Headers.parse(
            [
                b"Content-Type: text/plain; name=note.txt",
                b"Content-Transfer-Encoding: quoted-printable",
                b"X-Apple-Content-Length: 13",
            ]
        ),
    )

    assert interceptor.wants(node)
    substitution = interceptor.substitute(node, [BodyLine(b"")])

    assert "X-Apple-Content-Length" not in substitution.headers
    assert list(substitution.lines) == [b"gl=C3=BCcklichen", b""]
    assert interceptor.warnings == []


def test_interceptor_ignores_root_and_regular_parts() -> None:
    interceptor = attachments.PlaceholderInterceptor(attachments.AttachmentResolver(None))
    placeholder = Headers.parse([b"X-Apple-Content-Length: 1"])

    assert not interceptor.wants(NodeStart(path=(), headers=placeholder))
    assert not interceptor.wants(NodeStart(path=(1,), headers=Headers()))


def test_interceptor_records_warning_when_tolerant(tmp_path: Path) -> None:
    interceptor = attachments.PlaceholderInterceptor(
        attachments.AttachmentResolver(tmp_path), ignore_errors=True
    )
    node = NodeStart(
        path=(1,),
        headers=Headers.parse(
            [b"Content-Type: image/png; name=a.png", b"X-Apple-Content-Length: 1"]
        ),
    )

    substitution = interceptor.substitute(node, [])

    assert list(substitution.lines) == [b""]
    assert interceptor.warnings == ["Could not get attachment file (tried a.png)"]


def test_interceptor_raises_when_strict(tmp_path: Path) -> None:
    interceptor = attachments.PlaceholderInterceptor(attachments.AttachmentResolver(tmp_path))
    node = NodeStart(path=(1,), headers=Headers.parse([b"X-Apple-Content-Length: 1"]))

    with pytest.raises(AttachmentUnresolvable):
        interceptor.substitute(node, [])
