"""
Variable Resolver

Turns a source's variables into the register reads of one poll cycle and
binds the decoded scalars back to the variables.
"""

from dataclasses import dataclass
from datetime import datetime

from fieldpoll.common.config import SourceConfig, VariableConfig
from fieldpoll.common.exceptions import DecodeError, ResolutionError
from .decoder import decode
from .models import DecodedValue, Quality
from .transport import MAX_READ_COUNT


@dataclass(frozen=True)
class ReadRequest:
    """One read_registers call and the variables it serves"""
    function_code: int
    address: int
    count: int
    variables: tuple[VariableConfig, ...]

    @property
    def end_address(self) -> int:
        return self.address + self.count


class VariableResolver:
    """
    Builds and resolves the read plan for one source.

    Adjacent or overlapping variables in the same register table are merged
    into one request, up to the protocol limit of 125 registers. Gaps between
    variables are never read.
    """

    def __init__(
        self,
        source: SourceConfig,
        variables: list[VariableConfig],
        coalesce: bool = True,
        max_count: int = MAX_READ_COUNT,
    ):
        for variable in variables:
            if variable.source != source.name:
                raise ResolutionError(
                    f"variable {variable.name!r} references source "
                    f"{variable.source!r}, not {source.name!r}",
                    variable=variable.name,
                )
            if variable.end_address > 0x10000:
                raise ResolutionError(
                    f"variable {variable.name!r} runs past register 65535",
                    variable=variable.name,
                )

        self.source = source
        self.variables = tuple(variables)
        self._plan = self._build_plan(coalesce, max_count)

    @property
    def plan(self) -> list[ReadRequest]:
        return list(self._plan)

    def _build_plan(self, coalesce: bool, max_count: int) -> tuple[ReadRequest, ...]:
        if not coalesce:
            return tuple(
                ReadRequest(v.function_code, v.address, v.register_count, (v,))
                for v in self.variables
            )

        ordered = sorted(
            self.variables,
            key=lambda v: (v.function_code, v.address, v.register_count),
        )

        requests: list[ReadRequest] = []
        group: list[VariableConfig] = []
        start = end = 0

        for variable in ordered:
            fits = (
                group
                and variable.function_code == group[0].function_code
                and variable.address <= end
                and max(end, variable.end_address) - start <= max_count
            )
            if fits:
                group.append(variable)
                end = max(end, variable.end_address)
                continue

            if group:
                requests.append(ReadRequest(group[0].function_code, start, end - start, tuple(group)))
            group = [variable]
            start, end = variable.address, variable.end_address

        if group:
            requests.append(ReadRequest(group[0].function_code, start, end - start, tuple(group)))

        return tuple(requests)

    def resolve(
        self,
        responses: dict[ReadRequest, bytes],
        timestamp: datetime,
    ) -> list[DecodedValue]:
        """
        Decode every variable from the raw bytes of its request.

        A failure for one variable marks only that variable Bad.
        """
        values = []
        for request in self._plan:
            raw = responses.get(request)
            for variable in request.variables:
                values.append(self._resolve_one(request, variable, raw, timestamp))
        return values

    def _resolve_one(
        self,
        request: ReadRequest,
        variable: VariableConfig,
        raw: bytes | None,
        timestamp: datetime,
    ) -> DecodedValue:
        try:
            if raw is None:
                raise ResolutionError(
                    f"no data for request at {request.address}",
                    variable=variable.name,
                )
            offset = 2 * (variable.address - request.address)
            chunk = raw[offset:offset + 2 * variable.register_count]
            value = decode(
                chunk,
                variable.data_type,
                self.source.byte_order,
                self.source.word_order,
            )
        except (DecodeError, ResolutionError) as e:
            return DecodedValue(
                variable=variable,
                value=None,
                timestamp=timestamp,
                quality=Quality.BAD,
                error=e.message,
            )

        return DecodedValue(variable=variable, value=value, timestamp=timestamp)

    def mark(
        self,
        quality: Quality,
        timestamp: datetime,
        error: str | None = None,
    ) -> list[DecodedValue]:
        """Every variable with the same non-Good quality"""
        return [
            DecodedValue(
                variable=variable,
                value=None,
                timestamp=timestamp,
                quality=quality,
                error=error,
            )
            for request in self._plan
            for variable in request.variables
        ]
