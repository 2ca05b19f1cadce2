"""Setup script for lab-notify package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="lab-notify",
    version="1.0.0",
    description="Lab report push notification workers - idempotent email and SMS consumers",
    author="Lab Data Product Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["notification*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "sqlalchemy>=2",
        "psycopg2-binary",
        "redis",
        "requests",
        "email-validator>=2",
        "tenacity",
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
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "lab-notify-email=notification.entrypoints.email_service:main",
            "lab-notify-sms=notification.entrypoints.sms_service:main",
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
