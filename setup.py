"""Setup script for lab-order-lifecycle package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="lab-order-lifecycle",
    version="1.0.0",
    description="Lab order lifecycle - home sample collection state machine, slot capacity and SLA escalation",
    author="Lab Order Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["lab_orders*", "sla_escalation*", "shared*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "redis",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "lab-order-api=lab_orders.entrypoints.lab_order_api:main",
            "lab-order-sla-sweeper=sla_escalation.entrypoints.sla_sweeper:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Healthcare Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
)
