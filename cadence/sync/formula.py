"""Cadence: Formula Evaluator.

Calculated metrics combine other metrics and data-source queries with a
small arithmetic language: single uppercase letters as variables, numbers,
``+ - * /`` and parentheses. Formulas are tokenized, converted to reverse
Polish notation with the shunting-yard algorithm and evaluated on a stack.
Nothing is ever handed to ``eval``.
"""

import math
import re
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlmodel import Session

from cadence.connectors.registry import AdapterMap
from cadence.core.logging import get_logger
from cadence.models.metric_models import FormulaReference
from cadence import repository
from cadence.sync.sources import fetch_data_source_value
from cadence.sync.time_windows import UnknownTimeWindowError

logger = get_logger("sync.formula")

ALLOWED_CHARS = re.compile(r"^[0-9\s+\-*/().A-Z]*$")
_TOKEN = re.compile(r"\d+(?:\.\d*)?|\.\d+|[A-Z]|[+\-*/()]|\S")

_PRECEDENCE = {"+": 1, "-": 1, "*": 2, "/": 2, "neg": 3}
_BINARY = {"+", "-", "*", "/"}

RPNItem = Union[float, str]


class FormulaError(ValueError):
    """The formula is unsafe, malformed, or does not produce a finite number."""


class FormulaResult(BaseModel):
    success: bool
    value: Optional[float] = None
    error: Optional[str] = None


def normalize(formula: str) -> str:
    return formula.upper()


def extract_variables(formula: str) -> List[str]:
    """Variables in order of first appearance."""
    seen: List[str] = []
    for ch in normalize(formula):
        if "A" <= ch <= "Z" and ch not in seen:
            seen.append(ch)
    return seen


def validate_references(formula: str, references: Iterable[FormulaReference]) -> None:
    """Every variable in ``formula`` must be bound by exactly one reference."""
    counts: Dict[str, int] = {}
    for ref in references:
        var = ref.variable.upper()
        counts[var] = counts.get(var, 0) + 1

    for var in extract_variables(formula):
        if counts.get(var, 0) == 0:
            raise FormulaError(f"Variable {var} has no reference")
        if counts[var] > 1:
            raise FormulaError(f"Variable {var} has more than one reference")


def _to_rpn(formula: str, variables: Dict[str, float]) -> List[RPNItem]:
    output: List[RPNItem] = []
    ops: List[str] = []
    expect_operand = True

    for tok in _TOKEN.findall(formula):
        if tok[0].isdigit() or tok[0] == ".":
            if not expect_operand:
                raise FormulaError(f"Missing operator before '{tok}'")
            output.append(float(tok))
            expect_operand = False
        elif "A" <= tok <= "Z":
            if not expect_operand:
                raise FormulaError(f"Missing operator before '{tok}'")
            if tok not in variables:
                raise FormulaError(f"Unknown variable {tok}")
            output.append(float(variables[tok]))
            expect_operand = False
        elif tok == "(":
            if not expect_operand:
                raise FormulaError("Missing operator before '('")
            ops.append(tok)
        elif tok == ")":
            if expect_operand:
                raise FormulaError("Unexpected ')'")
            while ops and ops[-1] != "(":
                output.append(ops.pop())
            if not ops:
                raise FormulaError("Mismatched parentheses")
            ops.pop()
        elif tok in _BINARY:
            if expect_operand:
                # Prefix sign
                if tok == "-":
                    ops.append("neg")
                elif tok != "+":
                    raise FormulaError(f"Unexpected operator '{tok}'")
                continue
            while ops and ops[-1] != "(" and _PRECEDENCE[ops[-1]] >= _PRECEDENCE[tok]:
                output.append(ops.pop())
            ops.append(tok)
            expect_operand = True
        else:
            raise FormulaError(f"Invalid character '{tok}'")

    if expect_operand:
        raise FormulaError("Formula is incomplete")
    while ops:
        op = ops.pop()
        if op == "(":
            raise FormulaError("Mismatched parentheses")
        output.append(op)
    return output


def _eval_rpn(items: List[RPNItem]) -> float:
    stack: List[float] = []
    for item in items:
        if isinstance(item, float):
            stack.append(item)
        elif item == "neg":
            stack.append(-stack.pop())
        else:
            b = stack.pop()
            a = stack.pop()
            if item == "+":
                stack.append(a + b)
            elif item == "-":
                stack.append(a - b)
            elif item == "*":
                stack.append(a * b)
            else:
                if b == 0:
                    raise FormulaError("Division by zero")
                stack.append(a / b)
    if len(stack) != 1:
        raise FormulaError("Malformed formula")
    return stack[0]


def evaluate_formula(formula: str, variables: Dict[str, float]) -> float:
    """Evaluate ``formula`` with ``variables`` bound.

    Raises:
        FormulaError: on disallowed characters, unbound variables, syntax
            errors, division by zero, or a non-finite result.
    """
    expression = normalize(formula)
    if not ALLOWED_CHARS.match(expression):
        raise FormulaError("Invalid formula: contains unsafe characters")

    bound: Dict[str, float] = {}
    for name, value in variables.items():
        number = float(value)
        if not math.isfinite(number):
            raise FormulaError(f"Variable {name.upper()} is not a finite number")
        bound[name.upper()] = number

    try:
        result = _eval_rpn(_to_rpn(expression, bound))
    except OverflowError as e:
        raise FormulaError("Formula result is not a valid number") from e

    if not math.isfinite(result):
        raise FormulaError("Formula result is not a valid number")
    return result


class FormulaResolver:
    """Binds formula references to live values and evaluates the formula."""

    def __init__(self, session: Session, adapters: AdapterMap):
        self.session = session
        self.adapters = adapters

    async def _resolve(self, ref: FormulaReference) -> tuple[Optional[float], Optional[str]]:
        var = ref.variable.upper()

        if ref.type == "metric":
            metric = repository.get_metric(self.session, ref.id)
            if metric is None:
                return None, f"Metric {ref.id} referenced by {var} not found"
            row = repository.current_value(self.session, metric, ref.time_window)
            if row is None:
                return None, f"Could not resolve value for variable {var}"
            return row.value, None

        if ref.type == "data_source":
            if not ref.time_window:
                return None, f"Data source reference {var} missing time_window"
            data_source = repository.get_data_source(self.session, ref.id)
            if data_source is None:
                return None, f"Data source {ref.id} not found"
            try:
                result = await fetch_data_source_value(
                    data_source, ref.time_window, self.adapters
                )
            except UnknownTimeWindowError as e:
                return None, f"Variable {var}: {e}"
            if not result.success or result.value is None:
                reason = result.error or "no value"
                return None, f"Could not resolve value for variable {var}: {reason}"
            return result.value, None

        return None, f"Unknown reference type '{ref.type}' for variable {var}"

    async def calculate_metric_value(
        self, formula: str, references: Iterable[Union[FormulaReference, dict]]
    ) -> FormulaResult:
        """Resolve every reference, then evaluate. No partial substitution."""
        try:
            refs = [
                r if isinstance(r, FormulaReference) else FormulaReference.model_validate(r)
                for r in references
            ]
        except ValidationError as e:
            return FormulaResult(success=False, error=f"Malformed formula reference: {e}")

        try:
            validate_references(formula, refs)
        except FormulaError as e:
            return FormulaResult(success=False, error=str(e))

        used = set(extract_variables(formula))
        variables: Dict[str, float] = {}
        for ref in refs:
            if ref.variable.upper() not in used:
                logger.warning(f"Ignoring unused formula reference {ref.variable}")
                continue
            value, error = await self._resolve(ref)
            if error is not None:
                return FormulaResult(success=False, error=error)
            variables[ref.variable.upper()] = value

        try:
            return FormulaResult(success=True, value=evaluate_formula(formula, variables))
        except FormulaError as e:
            return FormulaResult(success=False, error=f"Formula evaluation error: {e}")
