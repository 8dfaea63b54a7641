"""Tests for constructor/method resolution, argument coercion and call timeouts."""

import os
import sys
import time

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from bridge_contexts import ExecutionContext
from bridge_errors import (
    ConstructorNotFound,
    InstanceNotFound,
    InvocationTimeout,
    MalformedRequest,
    MethodNotFound,
    TypeNotFound,
)
from bridge_invoker import Invoker, call_with_timeout, coerce_value, parse_arguments

SAMPLE = os.path.join(os.path.dirname(__file__), "fixtures", "Sample.py")


@pytest.fixture
def ctx():
    context = ExecutionContext("invoker-tests")
    context.load_from_path(SAMPLE)
    yield context
    context.drop_modules()


@pytest.fixture
def invoker():
    return Invoker(default_timeout=5.0)


# ============================================================
# Argument parsing and coercion
# ============================================================


class TestArguments:
    @pytest.mark.parametrize("payload", [None, "", "  ", "null", "[]", []])
    def test_empty_payloads(self, payload):
        assert parse_arguments(payload) == []

    def test_text_and_decoded_arrays(self):
        assert parse_arguments("[1, \"a\"]") == [1, "a"]
        assert parse_arguments([1, "a"]) == [1, "a"]

    def test_invalid_json(self):
        with pytest.raises(MalformedRequest, match="not valid JSON"):
            parse_arguments("[1,")

    def test_non_array(self):
        with pytest.raises(MalformedRequest, match="JSON array"):
            parse_arguments("{\"a\": 1}")

    def test_numeric_value_fits_int_and_float(self):
        assert coerce_value(5, int) == (5, True)
        assert coerce_value(5, float) == (5.0, False)

    def test_numeric_string_coerces_loosely(self):
        assert coerce_value("5", int) == (5, False)

    def test_unannotated_passes_through(self):
        import inspect
        value = {"k": [1, 2]}
        assert coerce_value(value, inspect.Parameter.empty) == (value, False)


# ============================================================
# Constructors
# ============================================================


class TestCreateInstance:
    def test_single_argument_overload(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]")
        assert instance_id.startswith("inst_")
        assert ctx.instances.get(instance_id).name == "x"

    def test_two_argument_overload(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[2, 3]")
        assert ctx.instances.get(instance_id).total == 5

    def test_string_arguments_coerced_to_int(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", ["2", "3"])
        assert ctx.instances.get(instance_id).total == 5

    @pytest.mark.parametrize("args", ["[]", "[1, 2, 3]"])
    def test_no_matching_arity(self, ctx, invoker, args):
        with pytest.raises(ConstructorNotFound, match="Sample.Calc"):
            invoker.create_instance(ctx, "Sample.Calc", args)

    def test_arity_matches_but_types_do_not(self, ctx, invoker):
        with pytest.raises(ConstructorNotFound, match="argument count 2"):
            invoker.create_instance(ctx, "Sample.Calc", "[\"a\", \"b\"]")

    def test_unknown_type(self, ctx, invoker):
        with pytest.raises(TypeNotFound, match="Sample.Nope"):
            invoker.create_instance(ctx, "Sample.Nope", "[]")

    def test_ids_unique_per_call(self, ctx, invoker):
        ids = {invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]") for _ in range(5)}
        assert len(ids) == 5

    def test_plain_constructor(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Resource", "[\"db\"]")
        assert ctx.instances.get(instance_id).name == "db"

    def test_dataclass_constructor(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Point", "[3, 4]")
        point = ctx.instances.get(instance_id)
        assert (point.x, point.y) == (3.0, 4.0)


# ============================================================
# Methods
# ============================================================


class TestInvoke:
    def test_static_method(self, ctx, invoker):
        assert invoker.invoke(ctx, "Sample.Calc", "Add", True, None, "[15, 27]") == 42

    def test_classmethod_is_static(self, ctx, invoker):
        assert invoker.invoke(ctx, "Sample.Calc", "Kind", True, None, None) == "Calc"

    def test_instance_method(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"SuperCalc\"]")
        info = invoker.invoke(ctx, None, "GetInfo", False, instance_id, "[]")
        assert info == "Calc Name: SuperCalc | Total: 0"

    def test_instance_state_persists_between_calls(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[1, 1]")
        invoker.invoke(ctx, None, "Accumulate", False, instance_id, "[3]")
        assert invoker.invoke(ctx, None, "Accumulate", False, instance_id, "[4]") == 9

    def test_non_public_method_reachable(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]")
        assert invoker.invoke(ctx, None, "_secret", False, instance_id, None) == "hidden"

    def test_static_method_through_instance(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]")
        assert invoker.invoke(ctx, None, "Add", True, instance_id, "[1, 2]") == 3

    def test_dataclass_argument(self, ctx, invoker):
        assert invoker.invoke(ctx, "Sample.Calc", "Norm", True, None,
                              "[{\"x\": 3, \"y\": 4}]") == 5.0

    def test_void_result_is_none(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Resource", "[\"r\"]")
        assert invoker.invoke(ctx, None, "close", False, instance_id, None) is None

    def test_unknown_instance(self, ctx, invoker):
        with pytest.raises(InstanceNotFound, match="inst_gone"):
            invoker.invoke(ctx, None, "GetInfo", False, "inst_gone", "[]")

    def test_released_instance(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]")
        ctx.instances.release(instance_id)
        with pytest.raises(InstanceNotFound):
            invoker.invoke(ctx, None, "GetInfo", False, instance_id, "[]")

    def test_unknown_method(self, ctx, invoker):
        with pytest.raises(MethodNotFound, match="Missing"):
            invoker.invoke(ctx, "Sample.Calc", "Missing", True, None, "[]")

    def test_wrong_arity(self, ctx, invoker):
        with pytest.raises(MethodNotFound, match="with 3 arguments"):
            invoker.invoke(ctx, "Sample.Calc", "Add", True, None, "[1, 2, 3]")

    def test_binding_must_match(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]")
        with pytest.raises(MethodNotFound):
            invoker.invoke(ctx, None, "GetInfo", True, instance_id, "[]")
        with pytest.raises(MethodNotFound):
            invoker.invoke(ctx, None, "Add", False, instance_id, "[1, 2]")

    def test_instance_method_without_instance(self, ctx, invoker):
        with pytest.raises(MalformedRequest, match="instanceId"):
            invoker.invoke(ctx, "Sample.Calc", "GetInfo", False, None, "[]")

    def test_unknown_type(self, ctx, invoker):
        with pytest.raises(TypeNotFound):
            invoker.invoke(ctx, "Sample.Nope", "Add", True, None, "[1, 2]")

    def test_errors_from_loaded_code_propagate(self, ctx, invoker):
        with pytest.raises(ValueError, match="bad input"):
            invoker.invoke(ctx, "Sample.Calc", "Fail", True, None, "[\"bad input\"]")


# ============================================================
# Overload tie-break
# ============================================================


class TestOverloadSelection:
    @pytest.mark.parametrize("arg, expected", [
        (5, "int"),
        (2.5, "float"),
        ("hi", "str"),
        ("5", "str"),
    ])
    def test_exact_type_preferred(self, ctx, invoker, arg, expected):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]")
        assert invoker.invoke(ctx, None, "Describe", False, instance_id, [arg]) == expected

    def test_selection_is_stable(self, ctx, invoker):
        instance_id = invoker.create_instance(ctx, "Sample.Calc", "[\"x\"]")
        results = {invoker.invoke(ctx, None, "Describe", False, instance_id, [7]) for _ in range(10)}
        assert results == {"int"}


# ============================================================
# Timeouts
# ============================================================


class TestTimeouts:
    def test_call_within_timeout(self, ctx, invoker):
        assert invoker.invoke(ctx, "Sample.Calc", "Sleep", True, None, "[0.01]",
                              timeout_ms=2000) == 0.01

    def test_call_exceeding_timeout(self, ctx, invoker):
        t0 = time.perf_counter()
        with pytest.raises(InvocationTimeout, match="Sleep"):
            invoker.invoke(ctx, "Sample.Calc", "Sleep", True, None, "[1.5]", timeout_ms=100)
        assert time.perf_counter() - t0 < 1.0

    def test_zero_timeout_runs_inline(self):
        assert call_with_timeout(lambda a, b: a * b, [6, 7], 0, "mul") == 42

    def test_exception_crosses_worker_thread(self):
        def boom():
            raise KeyError("k")

        with pytest.raises(KeyError):
            call_with_timeout(boom, [], 1.0, "boom")

    def test_exit_crosses_worker_thread(self):
        t0 = time.perf_counter()
        with pytest.raises(SystemExit):
            call_with_timeout(sys.exit, [4], 5.0, "exit")
        assert time.perf_counter() - t0 < 1.0

    def test_exit_from_loaded_method(self, ctx, invoker):
        t0 = time.perf_counter()
        with pytest.raises(SystemExit):
            invoker.invoke(ctx, "Sample.Calc", "Quit", True, None, "[2]", timeout_ms=3000)
        assert time.perf_counter() - t0 < 1.0

    def test_adapters_are_per_context(self, ctx, invoker):
        invoker.create_instance(ctx, "Sample.Calc", "[1, 2]")
        assert ctx.adapters
        ctx.teardown()
        assert ctx.adapters == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
