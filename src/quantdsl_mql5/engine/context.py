# src/quantdsl_mql5/engine/context.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Set, Union

from ..dsl.graph import Node, StrategySettings
from ..utils.mql import sanitize_name


InputValue = Union[int, float, bool, str]


@dataclass(slots=True)
class CompileOptions:
    """
    Compiler knobs that are not part of the strategy document.

    strict_stop_loss:
        raise instead of degrading to "no stop" when an indicator-based
        stop-loss cannot find its indicator.
    warmup_bars:
        minimum number of bars on the chart before any entry is evaluated.
    max_order_retries / retry_delay_ms:
        retry policy of the emitted OpenBuy / OpenSell helpers on
        requote / price-off rejections.
    """

    strict_stop_loss: bool = False
    warmup_bars: int = 100
    max_order_retries: int = 3
    retry_delay_ms: int = 500
    copyright: str = "QuantDSL"


@dataclass(slots=True)
class InputParam:
    """
    One `input` / `sinput` declaration of the emitted program.

    Non-optimizable inputs are emitted as `sinput` so the strategy tester
    hides them from its sweep grid.
    """

    name: str
    type: str
    value: InputValue
    comment: str
    optimizable: bool = True
    group: Optional[str] = None


@dataclass(slots=True)
class GeneratedCode:
    """
    Mutable accumulator filled by the generators, in pipeline order, and
    consumed once by the assembler. One instance per compile.
    """

    inputs: List[InputParam] = field(default_factory=list)
    global_variables: List[str] = field(default_factory=list)
    on_init: List[str] = field(default_factory=list)
    on_deinit: List[str] = field(default_factory=list)
    on_tick: List[str] = field(default_factory=list)
    helper_functions: List[str] = field(default_factory=list)

    # trade management only: consolidated position loop
    management_pre_loop: List[str] = field(default_factory=list)
    management_calls: List[str] = field(default_factory=list)

    # extra terms of the entry gate; they block new orders, never exits
    entry_gates: List[str] = field(default_factory=list)

    # cross-generator facts
    has_directional_sl: bool = False
    sl_method: Optional[str] = None
    tp_method: Optional[str] = None
    max_indicator_period: int = 0
    _helper_keys: Set[str] = field(default_factory=set)

    def add_input(self, param: InputParam) -> None:
        self.inputs.append(param)

    def has_input(self, name: str) -> bool:
        return any(p.name == name for p in self.inputs)

    def count_inputs(self, prefix: str) -> int:
        return sum(1 for p in self.inputs if p.name.startswith(prefix))

    def add_helper(self, key: str, body: str) -> bool:
        """Add a helper function once per compile; returns False if already present."""
        if key in self._helper_keys:
            return False
        self._helper_keys.add(key)
        self.helper_functions.append(body)
        return True

    def has_global(self, fragment: str) -> bool:
        return any(fragment in g for g in self.global_variables)

    def note_period(self, period: int) -> None:
        self.max_indicator_period = max(self.max_indicator_period, int(period))


def node_input(
    node: Node,
    field_name: str,
    name: str,
    type_: str,
    value: InputValue,
    comment: str,
    group: Optional[str] = None,
) -> InputParam:
    """Build an input whose optimizable flag follows the node's own flags."""
    return InputParam(
        name=name,
        type=type_,
        value=value,
        comment=comment,
        optimizable=node.data.is_optimizable(field_name),
        group=group,
    )


@dataclass(slots=True)
class CompileContext:
    """Read-only facts shared by every generator of one compile."""

    project_name: str
    settings: StrategySettings
    options: CompileOptions
    uses_server_time: bool = False
    has_timing: bool = False


def build_compile_context(
    project_name: str,
    settings: StrategySettings,
    options: Optional[CompileOptions] = None,
    timing_nodes: Optional[List[Node]] = None,
) -> CompileContext:
    server_time = any(getattr(n.data, "use_server_time", False) for n in (timing_nodes or []))
    return CompileContext(
        project_name=sanitize_name(project_name),
        settings=settings,
        options=options or CompileOptions(),
        uses_server_time=server_time,
        has_timing=bool(timing_nodes),
    )
