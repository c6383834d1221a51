from setuptools import setup, find_packages

setup(
    name="crtpower",
    version="0.1.0",
    packages=find_packages(include=["crtpower", "crtpower.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "statsmodels",
        "joblib",
    ],
    extras_require={
        "progress": ["tqdm"],
        "test": ["pytest", "tqdm"],
    },
    description="Monte Carlo Power Analysis for Multi-Arm Cluster-Randomized Trials",
)
