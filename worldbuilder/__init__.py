"""Worldbuilder -- generates a FastAPI backend from a declarative project spec.

Usage::

    from worldbuilder.pipeline import Pipeline

    report = await Pipeline(GeneratorConfig(output_dir=Path("./svc"))).run("project.yaml")
    sys.exit(report.exit_code)
"""

__version__ = "0.1.0"
