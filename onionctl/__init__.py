# See LICENSE for licensing information
