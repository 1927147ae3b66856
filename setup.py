from setuptools import find_packages, setup

setup(
    name="automate_chat",
    version="1.0.0",
    author="AutoMate",
    description="Offline-first two-party messaging for the AutoMate rental and mechanic marketplace.",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["automate_chat", "automate_chat.*"]),
    python_requires=">=3.9",
    install_requires=["curl_cffi>=0.7", "websockets>=13.0", "loguru>=0.7"],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "automate-chat = automate_chat.cli:main",
        ],
    },
)
