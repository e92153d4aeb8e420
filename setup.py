from setuptools import find_packages, setup

setup(
    name="mobile-e2e-engine",
    version="0.1.0",
    packages=find_packages(
        include=[
            "e2e_common",
            "e2e_common.*",
            "e2e_persistence",
            "e2e_persistence.*",
            "e2e_controller",
            "e2e_controller.*",
            "e2e_admin",
            "e2e_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "docker>=7.0.0",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "e2e-worker=e2e_controller.__main__:main",
            "e2e-admin=e2e_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
