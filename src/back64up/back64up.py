import os
import glob
import json
import time
import base64
import binascii
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple
from concurrent.futures import ThreadPoolExecutor, as_completed

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    Progress,
    SpinnerColumn,
    BarColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .errors import (
    AggregateReadError,
    BuildError,
    DecodeError,
    EnumerationError,
    ReadError,
    UsageError,
    WriteError,
)


class ConsoleManager:
    """Routes diagnostic output through 'rich' consoles."""

    def __init__(
        self,
        verbose: bool = False,
        console: Optional[Console] = None,
        err_console: Optional[Console] = None,
    ):
        """
        Args:
            verbose (bool): If True, debug messages and tables are shown.
            console (Console, optional): Console for regular output. Defaults to stdout.
            err_console (Console, optional): Console for warnings and errors.
                Defaults to stderr.
        """
        self.verbose = verbose
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)

    def log(self, message: str, style: str = ""):
        self.console.log(message, style=style)

    def info(self, message: str):
        self.log(message)

    def debug(self, message: str):
        if self.verbose:
            self.log(message, style="dim")

    def warn(self, message: str):
        self.err_console.log(message, style="yellow")

    def error(self, message: str):
        self.err_console.log(message, style="bold red")

    def print_table(self, title: str, columns: List[str], rows: List[List[str]]):
        """Prints a formatted table to the console."""
        table = Table(
            title=title,
            show_header=True,
            header_style="bold magenta",
            border_style="dim",
        )
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*row)
        self.console.print(table)


# --- Configuration Constants ---
SUPPORTED_FORMATS = ("json", "csv", "tsv")
DEFAULT_FORMAT, DEFAULT_OUT_FILE = "json", "./backup.json"
DEFAULT_ENCODING = "utf-8"
CSV_HEADER, TSV_HEADER = "filepath,content", "filepath\tcontent"

PathFilter = Callable[[str], bool]


def display_text(value: str) -> str:
    """Makes `value` safe to print: undecodable bytes are replaced and rich markup is escaped."""
    text = value.encode(DEFAULT_ENCODING, "surrogatepass").decode(
        DEFAULT_ENCODING, "replace"
    )
    return escape(text)


# --- Data Structures ---
class FileEntry(NamedTuple):
    """A single backed up file: its path and the base64 text of its bytes."""

    path: str
    content: str


class FileSystemSnapshot:
    """
    An immutable, ordered collection of encoded files.

    Entries keep the order they were enumerated in. Duplicate paths are kept
    as separate rows; only the mapping views collapse them.
    """

    def __init__(self, files: Sequence[FileEntry] = ()):
        self._files: Tuple[FileEntry, ...] = tuple(FileEntry(*f) for f in files)

    @property
    def files(self) -> Tuple[FileEntry, ...]:
        return self._files

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self._files)

    def __repr__(self) -> str:
        return f"FileSystemSnapshot({len(self._files)} files)"

    def to_map(self) -> Dict[str, str]:
        """Maps each path to its content. Later duplicates overwrite earlier ones."""
        return {entry.path: entry.content for entry in self._files}

    def as_json(self) -> str:
        return json.dumps(self.to_map(), separators=(",", ":"))

    def as_csv(self) -> str:
        lines = [CSV_HEADER]
        for entry in self._files:
            # escape filenames; backslashes are left alone
            escaped_path = entry.path.replace(",", "\\,")
            lines.append(f"{escaped_path},{entry.content}")
        return "\n".join(lines)

    def as_tsv(self) -> str:
        # tabs are never in filenames
        lines = [TSV_HEADER]
        lines.extend(f"{entry.path}\t{entry.content}" for entry in self._files)
        return "\n".join(lines)

    def serialize(self, output_format: str) -> str:
        """
        Renders the snapshot in one of the supported formats.

        Args:
            output_format (str): One of "json", "csv" or "tsv".

        Returns:
            str: The serialized snapshot.

        Raises:
            UsageError: If the format is not supported.
        """
        if output_format == "json":
            return self.as_json()
        if output_format == "csv":
            return self.as_csv()
        if output_format == "tsv":
            return self.as_tsv()
        raise UsageError(
            f"invalid --format '{output_format}' provided -- must be one of {', '.join(SUPPORTED_FORMATS)}"
        )


# --- Encoding ---
def encode_bytes(data: bytes) -> str:
    """Returns the standard base64 text of `data`, without line breaks."""
    return base64.b64encode(data).decode("ascii")


def decode(text: str) -> bytes:
    """
    Decodes base64 text produced by `encode_bytes` or `encode_file`.

    Raises:
        DecodeError: If `text` is not valid base64.
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError("could not decode base64 content", e) from e


def encode_file(path: str, console: Optional[ConsoleManager] = None) -> str:
    """
    Reads the file at `path` in full and returns its base64 text.

    Args:
        path (str): The file to read.
        console (ConsoleManager, optional): Receives the "encoded" log line.

    Returns:
        str: The base64 encoding of the file's bytes.

    Raises:
        ReadError: If the file cannot be opened or read.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ReadError(path, e) from e
    if console:
        console.info(f"encoded: {display_text(path)}")
    return encode_bytes(data)


# --- Core Logic Functions ---
def _literal_root(pattern: str) -> str:
    """Returns the leading directory of `pattern` that contains no wildcards."""
    head = os.path.dirname(pattern)
    while head and glob.has_magic(head):
        head = os.path.dirname(head)
    return head or os.curdir


def enumerate_paths(
    pattern: str,
    filters: Sequence[PathFilter] = (),
    console: Optional[ConsoleManager] = None,
) -> List[str]:
    """
    Expands a glob pattern against the working directory.

    Only regular files are returned, sorted so that the order is stable
    between runs. Each filter is then applied in turn and a path survives
    only if every filter accepts it.

    Args:
        pattern (str): The glob pattern. "**" matches across directories.
        filters (Sequence[Callable[[str], bool]]): Predicates to narrow the result.
        console (ConsoleManager, optional): Receives diagnostics on failure.

    Returns:
        List[str]: The matching paths, as produced by the glob expansion.

    Raises:
        EnumerationError: If the pattern is invalid, its root directory does
            not exist, or the expansion fails.
    """
    cwd = os.getcwd()
    try:
        if not isinstance(pattern, str) or not pattern:
            raise EnumerationError(pattern, cwd, "pattern must be a non-empty string")
        if "\0" in pattern:
            raise EnumerationError(pattern, cwd, "pattern contains a NUL character")
        root = _literal_root(pattern)
        if not os.path.isdir(root):
            raise EnumerationError(pattern, cwd, f"directory '{root}' does not exist")
        try:
            # recursive patterns such as "**/**" can yield a path more than once
            matches = sorted(
                {p for p in glob.glob(pattern, recursive=True) if os.path.isfile(p)}
            )
        except OSError as e:
            raise EnumerationError(pattern, cwd, str(e), e) from e
    except EnumerationError:
        if console:
            console.error(
                f"error occurred executing glob pattern '{display_text(str(pattern))}' on directory {display_text(cwd)}"
            )
        raise

    candidates = len(matches)
    for path_filter in filters:
        matches = [p for p in matches if path_filter(p)]
    if console:
        console.debug(
            f"glob matched {candidates} file(s), {len(matches)} left after {len(filters)} filter(s)"
        )
    return matches


def _encode_files_concurrently(
    paths: List[str],
    console: Optional[ConsoleManager],
    max_workers: Optional[int],
    progress: Any,
    task_id: Any,
) -> List[str]:
    """
    Uses a thread pool to read and encode every path.

    Every read is allowed to settle before failures are reported.

    Returns:
        List[str]: The encoded contents, in the same order as `paths`.

    Raises:
        AggregateReadError: If one or more files could not be read.
    """
    contents: List[Optional[str]] = [None] * len(paths)
    failures: List[Tuple[int, ReadError]] = []
    with ThreadPoolExecutor(
        max_workers=max_workers or (os.cpu_count() or 1) + 4,
        thread_name_prefix="encoder",
    ) as executor:
        future_to_index = {
            executor.submit(encode_file, path, console): i
            for i, path in enumerate(paths)
        }
        for future in as_completed(future_to_index):
            index = future_to_index[future]
            try:
                contents[index] = future.result()
            except ReadError as e:
                failures.append((index, e))
            if progress:
                progress.update(
                    task_id,
                    advance=1,
                    description=f"Encoding [green]{display_text(paths[index])}[/green]",
                )
    if failures:
        failures.sort(key=lambda failure: failure[0])
        raise AggregateReadError([(paths[i], e) for i, e in failures])
    return contents


def build_snapshot(
    pattern: str,
    filters: Sequence[PathFilter] = (),
    console: Optional[ConsoleManager] = None,
    max_workers: Optional[int] = None,
    progress: Any = None,
    task_id: Any = None,
) -> FileSystemSnapshot:
    """
    Encodes every file matching `pattern` into a FileSystemSnapshot.

    Enumeration finishes before any file is read. Files are then read
    concurrently, and the snapshot keeps the enumeration order regardless of
    which read finished first. A single unreadable file fails the whole build.

    Args:
        pattern (str): The glob pattern to back up.
        filters (Sequence[Callable[[str], bool]]): Extra predicates on paths.
        console (ConsoleManager, optional): Receives progress and diagnostics.
        max_workers (Optional[int]): Maximum number of reader threads.
            Defaults to CPU count + 4.
        progress (Any): A rich Progress to update per encoded file.
        task_id (Any): The progress task to update.

    Returns:
        FileSystemSnapshot: The encoded files.

    Raises:
        BuildError: Wrapping the EnumerationError or AggregateReadError.
    """
    try:
        paths = enumerate_paths(pattern, filters, console)
        if progress:
            progress.update(task_id, total=len(paths))
        try:
            contents = _encode_files_concurrently(
                paths, console, max_workers, progress, task_id
            )
        except AggregateReadError:
            if console:
                console.error("encountered error reading and encoding files")
            raise
    except (EnumerationError, AggregateReadError) as e:
        if console:
            console.error("error occurred creating backup file map")
        raise BuildError("error occurred creating backup file map", e) from e
    return FileSystemSnapshot(
        [FileEntry(path, content) for path, content in zip(paths, contents)]
    )


def _default_file_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def _write_output(path: Path, content: str, console: ConsoleManager) -> int:
    """
    Writes `content` to `path`, replacing any existing file in one step.

    Paths that were not valid UTF-8 on disk are written back as their
    original bytes. The data goes to a temporary file next to `path` that is
    then moved over it, so a failed write leaves any previous file untouched.

    Returns:
        int: The number of bytes written.

    Raises:
        WriteError: If the content cannot be encoded or written.
    """
    tmp_name = None
    try:
        data = content.encode(DEFAULT_ENCODING, "surrogateescape")
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "wb") as outfile:
            outfile.write(data)
        if path.exists():
            shutil.copymode(path, tmp_name)
        else:
            os.chmod(tmp_name, _default_file_mode())
        os.replace(tmp_name, path)
    except (OSError, UnicodeEncodeError) as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        console.error(
            f"error occurred while attempting to write file to {display_text(str(path))}"
        )
        raise WriteError(str(path), e) from e
    return len(data)


# --- Main Entry Point ---
def create_backup(
    pattern: str,
    out_file: str = DEFAULT_OUT_FILE,
    output_format: str = DEFAULT_FORMAT,
    filters: Sequence[PathFilter] = (),
    console: Optional[ConsoleManager] = None,
    max_workers: Optional[int] = None,
) -> Path:
    """
    Backs up every file matching `pattern` into a single output file.

    The files are enumerated, read and base64-encoded, then serialized as
    JSON, CSV or TSV. The output is only opened once the whole snapshot has
    been built and serialized, so a failed run never creates or truncates it.

    Args:
        pattern (str): Glob pattern, relative to the working directory.
        out_file (str): Destination path. Defaults to "./backup.json".
        output_format (str): "json", "csv" or "tsv". Defaults to "json".
        filters (Sequence[Callable[[str], bool]]): Extra predicates on paths.
        console (ConsoleManager, optional): Output handler. A default one is
            created when omitted.
        max_workers (Optional[int]): Maximum number of reader threads.

    Returns:
        Path: The absolute path of the written backup.

    Raises:
        UsageError: If an argument is missing or the format is unsupported.
        BuildError: If the files could not be enumerated or read.
        WriteError: If the output file could not be written.
    """
    console, start_time = console or ConsoleManager(), time.perf_counter()
    if not isinstance(pattern, str) or not pattern:
        raise UsageError("a non-empty glob pattern is required")
    if not isinstance(out_file, str) or not out_file:
        raise UsageError("a non-empty output path is required")
    if output_format not in SUPPORTED_FORMATS:
        raise UsageError(
            f"invalid --format '{output_format}' provided -- must be one of {', '.join(SUPPORTED_FORMATS)}"
        )

    cwd = os.getcwd()
    console.info(
        f"backing up all files in '{display_text(cwd)}' matching '{display_text(pattern)}' "
        f"to path '{display_text(out_file)}' in format '{output_format}'..."
    )
    if not out_file.endswith("." + output_format):
        console.warn(
            f"warning: the chosen --out-file '{display_text(out_file)}' extension does not "
            f"match the chosen --format '{output_format}'"
        )
    if console.verbose:
        console.print_table(
            "Backup Configuration",
            ["Parameter", "Value"],
            [
                ["Working Directory", display_text(cwd)],
                ["Pattern", display_text(pattern)],
                ["Output File", display_text(out_file)],
                ["Format", output_format],
                ["Filters", str(len(filters)) if filters else "None"],
                ["Max Workers", str(max_workers or "Default")],
            ],
        )

    console.info(
        f"Finding and encoding files matching the pattern {display_text(pattern)} in directory {display_text(cwd)}"
    )
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        SpinnerColumn(),
        TimeElapsedColumn(),
        console=console.console,
        transient=True,
    ) as progress:
        encode_task = progress.add_task("Encoding files", total=None)
        snapshot = build_snapshot(
            pattern, filters, console, max_workers, progress, encode_task
        )
    console.info(f"Found and encoded {len(snapshot)} file(s)")

    content = snapshot.serialize(output_format)
    output_path = Path(out_file).resolve()
    console.info(f"Beginning file write to {display_text(str(output_path))}")
    total_bytes = _write_output(output_path, content, console)
    console.info(f"Successfully wrote backup to {display_text(str(output_path))}")

    if console.verbose:
        console.print_table(
            "Backup Complete",
            ["Metric", "Value"],
            [
                ["Files Encoded", f"[bold green]{len(snapshot)}[/bold green]"],
                ["Total Time", f"{time.perf_counter() - start_time:.2f} seconds"],
                ["Output Size", f"{total_bytes / 1024:.2f} KB"],
                ["Output File", display_text(str(output_path))],
            ],
        )
    return output_path
