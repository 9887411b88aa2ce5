import pytest

from pipewright.errors import ExpressionError
from pipewright.expressions import (
    EvalContext,
    compile_expression,
    condition_opts_into_failure,
    evaluate_condition,
    referenced,
    render,
)


@pytest.fixture
def ctx():
    return EvalContext(
        {
            "env": {"GREETING": "hello"},
            "inputs": {"target": "prod", "count": 3},
            "matrix": {"python": "3.11"},
            "steps": {"build": {"outputs": {"version": "1.2.0"}}},
            "needs": {"lint": {"result": "success", "outputs": {}}},
        }
    )


class TestEvaluate:
    def test_property_access(self, ctx):
        assert compile_expression("steps.build.outputs.version").evaluate(ctx) == "1.2.0"

    def test_missing_property_is_null(self, ctx):
        assert compile_expression("steps.nope.outputs.version").evaluate(ctx) is None

    def test_string_comparison_ignores_case(self, ctx):
        assert compile_expression("inputs.target == 'PROD'").evaluate(ctx) is True

    def test_mixed_types_compare_as_numbers(self, ctx):
        assert compile_expression("inputs.count == '3'").evaluate(ctx) is True
        assert compile_expression("inputs.count > 2").evaluate(ctx) is True

    def test_and_or_return_operands(self, ctx):
        assert compile_expression("env.MISSING || 'fallback'").evaluate(ctx) == "fallback"
        assert compile_expression("env.GREETING && 'yes'").evaluate(ctx) == "yes"

    def test_functions(self, ctx):
        assert compile_expression("contains('hello world', 'WORLD')").evaluate(ctx) is True
        assert compile_expression("startsWith(matrix.python, '3.')").evaluate(ctx) is True
        assert compile_expression("format('{0}-{1}', env.GREETING, inputs.target)").evaluate(ctx) == "hello-prod"
        assert compile_expression("fromJSON('[1, 2]')[1]").evaluate(ctx) == 2

    def test_syntax_error(self):
        with pytest.raises(ExpressionError):
            compile_expression("inputs.target ==")

    def test_unknown_function(self, ctx):
        with pytest.raises(ExpressionError):
            compile_expression("frobnicate(1)").evaluate(ctx)


class TestTemplates:
    def test_render_mixes_text_and_expressions(self, ctx):
        assert render("py${{ matrix.python }}-${{ env.GREETING }}", ctx) == "py3.11-hello"

    def test_plain_text_untouched(self, ctx):
        assert render("echo $HOME", ctx) == "echo $HOME"

    def test_referenced_secrets(self):
        names = referenced(
            ["deploy --token ${{ secrets.TOKEN }}", "no templates here"],
            "secrets",
            conditions=["secrets.FLAG != ''"],
        )
        assert names == {"TOKEN", "FLAG"}


class TestConditions:
    def test_implicit_success(self, ctx):
        failed = EvalContext(ctx.values, status=lambda name: name == "failure" or name == "always")
        assert evaluate_condition("inputs.target == 'prod'", ctx) is True
        assert evaluate_condition("inputs.target == 'prod'", failed) is False

    def test_status_function_decides(self, ctx):
        failed = EvalContext(ctx.values, status=lambda name: name in ("failure", "always"))
        assert evaluate_condition("${{ failure() }}", failed) is True
        assert evaluate_condition("always()", failed) is True

    def test_opts_into_failure(self):
        assert condition_opts_into_failure("always()")
        assert condition_opts_into_failure("${{ failure() && env.X }}")
        assert not condition_opts_into_failure("env.X == 'y'")
        assert not condition_opts_into_failure(None)
