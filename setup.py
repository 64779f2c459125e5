"""
Setup file.
"""

import os

from setuptools import find_packages, setup

URL = "https://github.com/flashguard/flashguard"
KEYWORDS = "embedded arduino avr avrdude firmware flash serial bootloader microcontroller"
HERE = os.path.dirname(os.path.abspath(__file__))

INSTALL_REQUIRES = [
    "psutil",
    "pyserial",
]

EXTRAS_REQUIRE = {
    "test": ["pytest"],
}


if __name__ == "__main__":
    setup(
        name="flashguard",
        version="0.1.0",
        description="Build and flash AVR firmware from a detached session with port recovery and programmer fallback",
        keywords=KEYWORDS,
        url=URL,
        python_requires=">=3.10",
        package_dir={"": "src"},
        packages=find_packages("src"),
        install_requires=INSTALL_REQUIRES,
        extras_require=EXTRAS_REQUIRE,
        entry_points={
            "console_scripts": [
                "flash=flashguard.cli:main",
            ],
        },
        include_package_data=True)
