#!/usr/bin/env python

import setuptools

install_requires = [
    'numpy>=1.20.0',
    'scipy>=1.7.0',
    'dipy>=1.4.0',
    'joblib>=1.0.0',
    'tqdm>=4.62.0',
    'psutil>=5.8.0'
]

extras_require = {
    'test': ['pytest>=7.0'],
    'docs': ['sphinx', 'sphinx_rtd_theme'],
}

setuptools.setup(
    name='MDdMRIpy',
    version='0.1.0',
    description='Masked voxel-wise fitting tools for multidimensional diffusion MRI',
    license='BSD (3-Clause)',
    packages=setuptools.find_packages(exclude=("docs*",)),
    install_requires=install_requires,
    extras_require=extras_require,
    python_requires='>=3.8',
    include_package_data=True,
    zip_safe=False,
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: BSD License',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Topic :: Scientific/Engineering :: Medical Science Apps.',
    ],
)
