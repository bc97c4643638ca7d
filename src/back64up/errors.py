from typing import Any, List, Optional, Tuple


class Back64upError(Exception):
    """Base class for every failure raised by back64up."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def describe(self) -> str:
        """
        Renders this error followed by every error in its cause chain.

        Returns:
            str: One line per error, causes prefixed with "caused by:".
        """
        lines, seen = [self.message], {id(self)}
        cause = self.__cause__ or self.__context__
        while cause is not None and id(cause) not in seen:
            seen.add(id(cause))
            lines.append(f"caused by: {type(cause).__name__}: {cause}")
            cause = cause.__cause__ or cause.__context__
        return "\n".join(lines)


class UsageError(Back64upError):
    """Missing or invalid command-line arguments."""

    def __init__(
        self,
        message: str,
        usage: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.usage = usage


class EnumerationError(Back64upError):
    def __init__(
        self,
        pattern: Any,
        cwd: str,
        reason: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"could not expand glob pattern {pattern!r} in {cwd}: {reason}", cause
        )
        self.pattern, self.cwd = pattern, cwd


class ReadError(Back64upError):
    def __init__(self, path: str, cause: Optional[BaseException] = None):
        super().__init__(f"could not read file '{path}'", cause)
        self.path = path


class AggregateReadError(Back64upError):
    """One or more files of a concurrent batch could not be read."""

    def __init__(self, failures: List[Tuple[str, ReadError]]):
        paths = ", ".join(path for path, _ in failures)
        super().__init__(
            f"encountered error reading and encoding files ({len(failures)} failed: {paths})",
            failures[0][1] if failures else None,
        )
        self.failures = failures


class WriteError(Back64upError):
    def __init__(self, path: str, cause: Optional[BaseException] = None):
        super().__init__(f"could not write backup to '{path}'", cause)
        self.path = path


class BuildError(Back64upError):
    """The snapshot could not be built."""


class DecodeError(Back64upError):
    """Text handed to the decoder is not valid base64."""

