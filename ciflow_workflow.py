# ciflow_workflow.py
# The Rust crate pipeline: lint gates everything, build-and-test fans out over
# os x toolchain, publish only runs on version tags.
from __future__ import annotations

from ciflow import TriggerRules, is_tag, job, matrix, sh, uses, wf

TRIGGERS = TriggerRules(
    push_branches=("master",),
    push_tags=("v*",),
    pull_request_branches=("master",),
)

ENV = {"CARGO_TERM_COLOR": "always"}


def workflow():
    return wf(
        job(
            "lint",
            uses("actions/checkout@v3"),
            sh("Format", "cargo fmt -- --check"),
            sh("Clippy", "cargo clippy -- -D warnings"),
            env=ENV,
        ),
        job(
            "build-and-test",
            uses("actions/checkout@v3"),
            sh("Toolchain", "rustup toolchain install $MATRIX_RUST --profile minimal"),
            sh("Build", "cargo +$MATRIX_RUST build"),
            sh("Test (no default features)", "cargo +$MATRIX_RUST test --no-default-features"),
            sh("Test", "cargo +$MATRIX_RUST test"),
            needs=["lint"],
            matrix=matrix(
                os=["ubuntu-latest", "macos-latest", "windows-latest"],
                rust=["1.65", "stable", "nightly"],
            ),
            fail_fast=False,
            env=ENV,
        ),
        job(
            "docs",
            uses("actions/checkout@v3"),
            sh(
                "Docs",
                "cargo +nightly doc --no-deps --document-private-items",
                env={"RUSTFLAGS": "--cfg docsrs", "RUSTDOCFLAGS": "--cfg docsrs -Dwarnings"},
            ),
            needs=["lint"],
            env=ENV,
        ),
        job(
            "miri",
            uses("actions/checkout@v3"),
            sh("Miri", "cargo +nightly miri test"),
            needs=["lint"],
            env=ENV,
        ),
        job(
            "publish",
            uses("actions/checkout@v3"),
            sh("Publish", "cargo publish", secrets=["CARGO_REGISTRY_TOKEN"]),
            needs=["lint", "docs", "build-and-test", "miri"],
            if_=is_tag(),
            env=ENV,
        ),
    )
