"""Setup script for mediafetch."""

from setuptools import setup, find_packages

setup(
    name="mediafetch",
    version="1.0.0",
    description="Rate-limited, cache-backed outbound fetch layer for media provider APIs",
    python_requires=">=3.10",
    packages=find_packages(include=["mediafetch", "mediafetch.*"]),
    install_requires=[
        "anyio>=4.0",
        "httpx>=0.25",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "opentelemetry-api>=1.20",
        "opentelemetry-sdk>=1.20",
    ],
    extras_require={
        "http2": ["httpx[http2]"],
        "otlp": ["opentelemetry-exporter-otlp-proto-grpc>=1.20"],
        "test": [
            "pytest>=7.4",
            "respx>=0.20",
        ],
    },
)
