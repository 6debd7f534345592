"""Micro operator.

Kubernetes controller for the Micro custom resource:
 - keeps the replica count of each Micro's Deployment at spec.size
 - makes the Micro the controller owner of its Deployment
 - recreates a Deployment deleted out-of-band from the last observed definition
 - publishes the names of the Deployment's pods in status.nodes
"""
