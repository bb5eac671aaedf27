#!/usr/bin/env python3
"""
Name: mip
Description: convert a PNG or JPEG image into a MIME multipart message
Author:
License:

Reads a whole image from standard input and writes a multipart/mixed
message to standard output: a placeholder text part followed by the image
as a base64 attachment, with CRLF line endings throughout so the result
can be handed to a mail transport or a news server as-is.
"""

import sys
import os
import argparse
import base64
from collections import namedtuple

__version__ = "1.0"

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

ALPHANUMERIC = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
FILENAME_LEN = 12
BOUNDARY_LEN = 24
# RFC 2045 caps base64 lines at 76 characters.
LINE_WIDTH = 76
CRLF = b"\r\n"
DASHES = "-" * 14

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8"

# 57 input bytes encode to exactly one 76-character line.
ENCODE_CHUNK = 57 * 64

ImageFormat = namedtuple('ImageFormat', ['name', 'content_type', 'extension'])

PNG = ImageFormat('png', 'image/png', '.png')
JPEG = ImageFormat('jpeg', 'image/jpeg', '.jpg')
UNKNOWN = ImageFormat('unknown', None, None)


class MipError(Exception):
    """Base class for conditions that stop a conversion."""


class EmptyInputError(MipError):
    pass


class UnsupportedFormatError(MipError):
    pass


class RandomSourceError(MipError):
    pass


def classify(data: bytes) -> ImageFormat:
    """Identifies the image type from its magic number."""
    if len(data) >= 8 and data[:8] == PNG_SIGNATURE:
        return PNG
    if len(data) >= 2 and data[:2] == JPEG_SIGNATURE:
        return JPEG
    return UNKNOWN


def require_supported(data: bytes) -> ImageFormat:
    image_format = classify(data)
    if image_format is UNKNOWN:
        raise UnsupportedFormatError("Error: File type not recognized. Only PNG and JPEG are supported.")
    return image_format


def random_token(length: int, randbytes=os.urandom) -> str:
    """
    Returns a string of `length` characters drawn from ALPHANUMERIC.

    Each random byte is reduced modulo 62, so the first 8 symbols of the
    alphabet are very slightly more likely than the rest (256 = 4 * 62 + 8).
    The tokens only need to be unpredictable, so the skew is accepted.

    Args:
        length: Number of characters to produce.
        randbytes: Callable returning `n` bytes from a secure source.
            Tests substitute a deterministic one.

    Raises:
        RandomSourceError: If the source cannot supply the bytes.
    """
    try:
        raw = randbytes(length)
    except (OSError, NotImplementedError) as e:
        raise RandomSourceError(str(e)) from e

    if len(raw) != length:
        raise RandomSourceError(f"short read from random source ({len(raw)} of {length} bytes)")

    return "".join(ALPHANUMERIC[b % len(ALPHANUMERIC)] for b in raw)


def make_boundary(randbytes=os.urandom) -> str:
    return DASHES + random_token(BOUNDARY_LEN, randbytes)


class LineBreaker:
    """
    Write-through filter that inserts CRLF after every `width` characters.

    The only state is the number of characters written since the last
    break. A break is emitted lazily, just before the next character, so a
    stream whose length is an exact multiple of `width` does not end with
    CRLF. Output is identical however the input is split across calls.
    """
    def __init__(self, sink, width=LINE_WIDTH):
        self.sink = sink
        self.width = width
        self.line_length = 0

    def write(self, data):
        written = 0
        total = len(data)
        while written < total:
            if self.line_length == self.width:
                self.sink.write(CRLF)
                self.line_length = 0
            # Copy the rest of the current line in one piece.
            take = min(self.width - self.line_length, total - written)
            self.sink.write(data[written:written + take])
            written += take
            self.line_length += take
        return written


def encode_base64(data: bytes, sink, chunk_size=ENCODE_CHUNK):
    """
    Base64-encodes `data` and writes the result to `sink` piece by piece.

    `chunk_size` must be a multiple of 3 so that no padding appears before
    the final piece; the concatenated output then equals
    base64.b64encode(data).
    """
    if chunk_size <= 0 or chunk_size % 3:
        raise ValueError(f"chunk size must be a positive multiple of 3, not {chunk_size}")

    for start in range(0, len(data), chunk_size):
        sink.write(base64.b64encode(data[start:start + chunk_size]))


def emit(output, to, subject, newsgroups, image_format, boundary, filename, data):
    """
    Writes the complete multipart message for `data` to `output`.

    `output` is any binary stream. Header values are written as UTF-8. The
    Newsgroups header is left out when `newsgroups` is empty; To and
    Subject are always present.
    """
    def line(text=""):
        output.write(text.encode("utf-8") + CRLF)

    attachment = filename + image_format.extension

    # Message headers
    line(f"To: {to}")
    line(f"Subject: {subject}")
    if newsgroups:
        line(f"Newsgroups: {newsgroups}")
    line("MIME-Version: 1.0")
    line(f'Content-Type: multipart/mixed; boundary="{boundary}"')
    line()

    line("This is a multi-part message in MIME format.")

    # Text part
    line(boundary)
    line("Content-Type: text/plain; charset=UTF-8; format=flowed")
    line("Content-Transfer-Encoding: 7bit")
    line()
    line("(Your message goes here.)")

    # Image part
    line(boundary)
    line(f'Content-Type: {image_format.content_type}; name="{attachment}"')
    line(f'Content-Disposition: attachment; filename="{attachment}"')
    line("Content-Transfer-Encoding: base64")
    line()

    encode_base64(data, LineBreaker(output))

    output.write(CRLF)
    line(boundary + "--")


def read_input(stream) -> bytes:
    """Reads `stream` to the end. Empty input is an error."""
    data = stream.read()
    if not data:
        raise EmptyInputError("Error: Input is empty")
    return data


def print_error(message):
    sys.stderr.write(message + "\r\n")


def print_usage(program_name):
    """Prints the help text to standard error."""
    usage_lines = [
        f"Usage: {program_name} [OPTIONS] < input_image",
        "Convert PNG/JPEG images to MIME-compliant email or Usenet messages.",
        "",
        "Options:",
        "  -t string    To: address (email recipient)",
        "  -s string    Subject: line",
        "  -n string    Newsgroups: (optional, for Usenet posts)",
        "  -h, --help   Show this help message",
        "",
        "Example:",
        f'  {program_name} -t recipient@example.com -s "My Image" < image.png > message.txt',
        "",
        "The program reads from stdin and writes to stdout.",
    ]
    for text in usage_lines:
        print_error(text)


def convert(to, subject, newsgroups, input_stream, output_stream, randbytes=os.urandom) -> int:
    """
    Runs the whole conversion and returns the exit status.

    Nothing reaches `output_stream` until the input has been read and
    classified and both random tokens exist, so every failure before that
    point leaves the output empty. A write failure after that point leaves
    whatever was already written in place.
    """
    try:
        data = read_input(input_stream)
        image_format = require_supported(data)
    except OSError as e:
        print_error(f"Error reading input: {e}")
        return EXIT_FAILURE
    except MipError as e:
        print_error(str(e))
        return EXIT_FAILURE

    try:
        boundary = make_boundary(randbytes)
    except RandomSourceError as e:
        print_error(f"Error generating boundary: {e}")
        return EXIT_FAILURE

    try:
        filename = random_token(FILENAME_LEN, randbytes)
    except RandomSourceError as e:
        print_error(f"Error generating filename: {e}")
        return EXIT_FAILURE

    try:
        emit(output_stream, to, subject, newsgroups, image_format, boundary, filename, data)
        output_stream.flush()
    except OSError as e:
        print_error(f"Error writing output: {e}")
        return EXIT_FAILURE

    return EXIT_SUCCESS


class UsageArgumentParser(argparse.ArgumentParser):
    """Reports bad arguments with the full usage text and exit status 1."""
    def error(self, message):
        print_error(f"{self.prog}: {message}")
        print_usage(self.prog)
        sys.exit(EXIT_FAILURE)


def main():
    """Parses arguments and converts standard input to standard output."""
    program_name = os.path.basename(sys.argv[0])

    # Help is handled by hand so it goes to stderr with CRLF endings.
    parser = UsageArgumentParser(prog=program_name, add_help=False, allow_abbrev=False)
    parser.add_argument('-t', dest='to', default='', metavar='string',
                        help='To: address (email recipient)')
    parser.add_argument('-s', dest='subject', default='', metavar='string',
                        help='Subject: line')
    parser.add_argument('-n', dest='newsgroups', default='', metavar='string',
                        help='Newsgroups: (optional, for Usenet posts)')
    parser.add_argument('-h', '--help', action='store_true',
                        help='Show this help message')

    args = parser.parse_args()

    if args.help:
        print_usage(program_name)
        sys.exit(EXIT_SUCCESS)

    # Refuse to wait on a terminal; the image must be piped or redirected.
    if sys.stdin.isatty():
        print_usage(program_name)
        sys.exit(EXIT_FAILURE)

    sys.exit(convert(args.to, args.subject, args.newsgroups,
                     sys.stdin.buffer, sys.stdout.buffer))


if __name__ == "__main__":
    main()
