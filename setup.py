#! /usr/bin/env python
"""pglo, setup file.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from setuptools import setup


setup(name="pglo",
      version="0.2",
      author="Manlio Perillo",
      author_email="manlio.perillo@gmail.com",
      description="asynchronous PostgreSQL large objects (BLOB/CLOB) "
                  "streaming, over the fast-path interface",
      license="MIT",
      url="http://developer.berlios.de/projects/pglib/",
      classifiers=[
          "Development Status :: 4 - Beta",
          "Environment :: Console",
          "Framework :: Twisted",
          "Intended Audience :: Developers",
          "License :: OSI Approved :: MIT License",
          "Operating System :: OS Independent",
          "Programming Language :: Python :: 3",
          "Topic :: Database :: Front-Ends",
          ],
      packages=["pglo", "pglo.test"],
      python_requires=">=3.8",
      install_requires=[
          "Twisted",
          "zope.interface",
          ],
      extras_require={
          "test": ["pytest"],
          },
      )
