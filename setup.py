"""Setup script for the Order Fulfillment Core."""

from setuptools import setup, find_packages

setup(
    name="order-fulfillment-core",
    version="1.0.0",
    description="Payment verification, order transitions, order locks and notification queue for order fulfillment",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["fulfillment_core", "fulfillment_core.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.24.0",
            "pytest-mock>=3.12.0",
            "httpx>=0.26.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fulfillment-api=fulfillment_core.api.main:run",
            "fulfillment-notification-worker=fulfillment_core.workers.notification_worker:main",
            "fulfillment-maintenance-worker=fulfillment_core.workers.maintenance_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
