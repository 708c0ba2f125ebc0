"""Centralised Shopify GraphQL query constants.

All GraphQL strings used by the Shopify integration live here so that the
sync services, webhook handlers and vendor endpoints import from a single
source of truth.
"""

PRODUCTS_QUERY = """
query GetProducts($first: Int!, $cursor: String, $query: String) {
  products(first: $first, after: $cursor, query: $query) {
    edges {
      node {
        id
        title
        vendor
        status
        variants(first: 100) {
          edges {
            node {
              id
              title
              sku
              inventoryItem {
                id
                tracked
              }
            }
          }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
"""

PRODUCT_QUERY = """
query GetProduct($id: ID!) {
  product(id: $id) {
    id
    title
    vendor
    status
    variants(first: 100) {
      edges {
        node {
          id
          title
          sku
          inventoryItem {
            id
            tracked
          }
        }
      }
    }
  }
}
"""

INVENTORY_LEVELS_QUERY = """
query GetInventoryLevels($inventoryItemId: ID!, $first: Int!) {
  inventoryItem(id: $inventoryItemId) {
    id
    inventoryLevels(first: $first) {
      edges {
        node {
          id
          quantities(names: ["available"]) {
            name
            quantity
          }
          location {
            id
            name
          }
        }
      }
    }
  }
}
"""

VENDORS_QUERY = """
query GetVendors($first: Int!) {
  shop {
    name
  }
  productVendors(first: $first) {
    edges {
      node
    }
  }
}
"""
