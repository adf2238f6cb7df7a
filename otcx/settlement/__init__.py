"""Settlement: conversion, proof validation, review coordination and export."""
