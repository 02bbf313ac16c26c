"""Setup script for the Engagement Order Service."""

from setuptools import setup, find_packages

setup(
    name="engagement-orders",
    version="1.0.0",
    description="Order reconciliation between Pesapal payments and an engagement supplier API",
    author="Engagement Orders Team",
    python_requires=">=3.10",
    packages=find_packages(include=["engagement_orders", "engagement_orders.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
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
            "engagement-orders-worker=engagement_orders.workers.reconciliation_worker:main",
            "engagement-orders-register-ipn=engagement_orders.workers.register_ipn:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
