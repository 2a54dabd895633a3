"""
Base classes and interfaces for tiny-agg aggregate states.

This module defines the contract every aggregate algorithm implements:
accumulate observations, merge partial states produced by independent
workers, finalize into a result, and move between processes as compact
bytes. The concrete algorithms form a closed set that is dispatched by
``tiny_agg.aggregate``; this base class only holds the shared plumbing.
"""

import abc
import json
from typing import Any, Dict, NamedTuple, Optional, Type, TypeVar, Union

from tiny_agg.core.encoding import BytesLike, ByteReader, ByteWriter, read_header
from tiny_agg.core.errors import IncompatibleState, StateFinalized, UnsupportedFormat

S = TypeVar("S", bound="AggregateState")


class Observation(NamedTuple):
    """
    A single row fed to an aggregate.

    Attributes:
        time: Optional timestamp (int microseconds or datetime). Required by
              the time-ordered aggregates and ignored by the sketches.
        value: The observed value.
    """

    time: Optional[Any]
    value: Any


class AggregateState(abc.ABC):
    """
    Abstract base class for all aggregate states.

    Subclasses set ``KIND`` (the one byte format tag) and implement update,
    merge, finalize, the dictionary form used for inspection, and the binary
    params/payload codec. The header handling, compatibility checks and
    finalization bookkeeping live here.
    """

    KIND: int = 0
    FORMAT_VERSION: int = 1

    def __init__(self) -> None:
        self._items_processed = 0
        self._finalized = False

    @abc.abstractmethod
    def accumulate(self, observation: Observation) -> None:
        """
        Feed one observation to the state.

        Implementations validate the observation completely before touching
        any field, so a rejected observation leaves the state unchanged.

        Raises:
            InvalidObservation: If the observation is rejected.
            StateFinalized: If finalize() was already called.
        """

    @abc.abstractmethod
    def merge(self: S, other: Any) -> S:
        """
        Combine this state with another of the same kind.

        Neither input is modified; a new state is returned.

        Raises:
            IncompatibleState: If the kinds or construction parameters differ.
        """

    @abc.abstractmethod
    def finalize(self, **options: Any) -> Any:
        """Produce the aggregate result and freeze the state."""

    @abc.abstractmethod
    def params(self) -> Dict[str, Any]:
        """Return the construction parameters that must match for a merge."""

    @abc.abstractmethod
    def _write_params(self, writer: ByteWriter) -> None:
        """Append the construction parameters to the header."""

    @abc.abstractmethod
    def _write_payload(self, writer: ByteWriter) -> None:
        """Append the algorithm specific payload."""

    @classmethod
    @abc.abstractmethod
    def _read(cls: Type[S], reader: ByteReader) -> S:
        """Rebuild a state from a reader positioned after the header."""

    @abc.abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Convert the state to a JSON compatible dictionary."""

    @classmethod
    @abc.abstractmethod
    def from_dict(cls: Type[S], data: Dict[str, Any]) -> S:
        """Create a state from its dictionary representation."""

    def _check_mutable(self) -> None:
        if self._finalized:
            raise StateFinalized(
                f"{self.__class__.__name__} was finalized and cannot accept observations"
            )

    def _mark_finalized(self) -> None:
        self._finalized = True

    def _check_compatible(self, other: Any) -> None:
        """
        Helper to verify that another state (or read-only view) can be merged.

        Raises:
            IncompatibleState: On kind, version or parameter mismatch.
        """
        kind = getattr(other, "KIND", None)
        if kind != self.KIND:
            raise IncompatibleState(
                f"Cannot merge {self.__class__.__name__} with {other.__class__.__name__}"
            )
        if getattr(other, "FORMAT_VERSION", None) != self.FORMAT_VERSION:
            raise IncompatibleState(
                f"Cannot merge format version {self.FORMAT_VERSION} "
                f"with {getattr(other, 'FORMAT_VERSION', None)}"
            )
        if self.params() != other.params():
            raise IncompatibleState(
                f"Cannot merge {self.__class__.__name__} states with different "
                f"parameters: {self.params()} and {other.params()}"
            )

    def _base_dict(self) -> Dict[str, Any]:
        """
        Create a dictionary with base attributes common to all states.

        Returns:
            A dictionary with base attributes.
        """
        return {
            "type": self.__class__.__name__,
            "version": self.FORMAT_VERSION,
            "items_processed": self._items_processed,
        }

    @classmethod
    def _check_dict(cls, data: Dict[str, Any], *required: str) -> None:
        if data.get("type") != cls.__name__:
            raise UnsupportedFormat(
                f"Dictionary represents '{data.get('type')}' but expected '{cls.__name__}'"
            )
        if data.get("version") != cls.FORMAT_VERSION:
            raise UnsupportedFormat(
                f"Unsupported {cls.__name__} dictionary version {data.get('version')}"
            )
        missing = set(required) - data.keys()
        if missing:
            raise UnsupportedFormat(
                f"Invalid dictionary format for {cls.__name__}. Missing keys: {sorted(missing)}"
            )

    def to_bytes(self) -> bytes:
        """
        Encode the state as ``tag | version | params | payload``.

        Returns:
            The compact binary representation.
        """
        writer = ByteWriter().header(self.KIND, self.FORMAT_VERSION)
        self._write_params(writer)
        self._write_payload(writer)
        return writer.getvalue()

    @classmethod
    def from_bytes(cls: Type[S], data: BytesLike) -> S:
        """
        Decode a state produced by to_bytes().

        Raises:
            UnsupportedFormat: If the header does not match this class or the
                payload is malformed.
        """
        reader = read_header(data, cls.KIND, cls.FORMAT_VERSION)
        state = cls._read(reader)
        reader.expect_end()
        return state

    def serialize(self, format: str = "binary") -> Union[str, bytes]:
        """
        Serialize the state to a string or bytes.

        Args:
            format: 'binary' for the compact encoding, 'json' for the
                    dictionary form.

        Returns:
            The serialized representation of the state.

        Raises:
            ValueError: If the format is not supported.
        """
        if format == "binary":
            return self.to_bytes()
        elif format == "json":
            return json.dumps(self.to_dict())
        else:
            raise ValueError(f"Unsupported serialization format: {format}")

    @classmethod
    def deserialize(cls: Type[S], data: Union[str, bytes], format: str = "binary") -> S:
        """
        Deserialize a state from the output of serialize().

        Raises:
            ValueError: If the format is not supported.
        """
        if format == "binary":
            if isinstance(data, str):
                raise UnsupportedFormat("Binary format expects bytes, got str")
            return cls.from_bytes(data)
        elif format == "json":
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            return cls.from_dict(json.loads(data))
        else:
            raise ValueError(f"Unsupported serialization format: {format}")

    @property
    def serialized_size(self) -> int:
        """Length in bytes of the binary encoding."""
        return len(self.to_bytes())

    @property
    def items_processed(self) -> int:
        """Get the total number of observations accumulated into this state."""
        return self._items_processed

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def error_bounds(self) -> Dict[str, float]:
        """
        Get the theoretical error bounds for this state.

        The base implementation returns an empty dictionary; approximate
        algorithms override it.
        """
        return {}

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the current state, for monitoring and debugging.

        Derived classes extend this with algorithm specific entries.
        """
        stats: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "kind": self.KIND,
            "items_processed": self._items_processed,
            "serialized_bytes": self.serialized_size,
        }
        stats.update(self.error_bounds())
        return stats

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v!r}" for k, v in self.params().items())
        return f"{self.__class__.__name__}({params}, items={self._items_processed})"
