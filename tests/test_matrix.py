import pytest

from ciflow.dsl import job, matrix, sh
from ciflow.errors import MatrixError
from ciflow.matrix import Matrix, expand, size

OSES = ["ubuntu", "macos", "windows"]
RUSTS = ["1.65", "stable", "nightly"]


def build_job(**kw):
    return job("build", sh("build", "cargo build"), matrix=matrix(os=OSES, rust=RUSTS), **kw)


def test_three_by_three_is_nine_in_declaration_order():
    insts = list(expand(build_job()))
    assert len(insts) == 9 == size(build_job())
    assert [tuple(i.variables.values()) for i in insts] == [(o, r) for o in OSES for r in RUSTS]
    assert [i.index for i in insts] == list(range(9))
    assert insts[0].name == "build (ubuntu, 1.65)"


def test_expansion_is_reproducible():
    first = [i.name for i in expand(build_job())]
    second = [i.name for i in expand(build_job())]
    assert first == second


def test_expand_is_lazy():
    gen = expand(build_job())
    assert next(gen).variables == {"os": "ubuntu", "rust": "1.65"}


def test_job_without_matrix_is_identity():
    plain = job("lint", sh("lint", "cargo clippy"))
    insts = list(expand(plain))
    assert len(insts) == 1
    assert insts[0].job is plain
    assert insts[0].name == "lint"
    assert insts[0].variables == {}
    assert size(plain) == 1


def test_instances_inherit_job_metadata():
    j = build_job(needs=["lint"])
    inst = next(expand(j))
    assert inst.needs == ("lint",)
    assert inst.steps == j.steps
    assert inst.condition is j.condition


def test_matrix_variables_exported_as_env():
    j = job("t", sh("t", "true"), matrix=matrix({"node-version": [18]}), env={"CI": "1"})
    env = next(expand(j)).environment()
    assert env == {"CI": "1", "MATRIX_NODE_VERSION": "18"}


def test_exclude():
    m = Matrix({"os": OSES, "rust": RUSTS}, exclude=[{"os": "windows", "rust": "nightly"}, {"os": "macos"}])
    combos = list(m.combinations())
    assert len(combos) == m.size() == 5
    assert {"os": "windows", "rust": "nightly"} not in combos
    assert all(c["os"] != "macos" for c in combos)


@pytest.mark.parametrize(
    "axes, exclude",
    [
        ({}, ()),
        ({"os": []}, ()),
        ({"os": "ubuntu"}, ()),
        ({"os": 3}, ()),
        ({"os": ["a"]}, [{"arch": "x86"}]),
        ({"os": ["a"]}, [{"os": "a"}]),
        ({"os": ["a"]}, [{}]),
    ],
)
def test_malformed_matrix(axes, exclude):
    with pytest.raises(MatrixError):
        Matrix(axes, exclude=exclude)


def test_duplicate_axis_rejected():
    with pytest.raises(MatrixError):
        Matrix([("os", ["a"]), ("os", ["b"])])
